"""
Default Configuration
~~~~~~~~~~~~~~~~~~~~~

Defaults matching the single-machine development deployment: a
Litestream-replicated SQLite database in the ``data`` volume, the
server binary in the ``server_binary`` volume, and the backend reachable
on loopback port 33371 through a socat forwarder.
"""

from __future__ import annotations

__all__ = ["DEFAULT_CONFIG"]

DEFAULT_CONFIG: dict = {
    "version": "1.0",
    "service": {
        "name": "deepsplit",
        "backend_unit": "deepsplit_be-dev",
        "backend_image": "alpine:latest",
        "binary_name": "deepsplit_be",
    },
    "network": {
        "host_ip": "127.0.0.1",
        "host_port": 33371,
        "candidate_port": 33372,
        "backend_port": 33373,
        "container_port": 8000,
        "forwarder_image": "docker.io/alpine/socat:latest",
        "routing_volume": "swapguard_routing",
    },
    "storage": {
        "data_volume": "data",
        "binary_volume": "server_binary",
        "data_mount": "/data",
        "binary_mount": "/server_binary",
        "database_file": "deepsplit.sqlite",
        "staging_file": "deepsplit-restored.sqlite",
        "config_dir": "./config",
        "config_mount": "/config",
        "archive_dir": "./backups",
    },
    "environment": {
        "env_file": ".env",
        "variables": {
            "GEO_ASN_COUNTRY_CSV": "/config/geo-whois-asn-country-ipv4-num.csv",
            "SERVICE_JSON": "/config/service-account.json",
        },
    },
    "replication": {
        "enabled": True,
        "unit": "litestream-dev",
        "image": "litestream/litestream:latest",
        "config_path": "/config/litestream.yml",
    },
    "health": {
        "path": "/",
        "query": "{ currencies { displayName } }",
        "data_key": "currencies",
        "empty_sentinel": "[]",
        "timeout": 5.0,
        "max_attempts": 5,
        "initial_delay": 1.0,
        "backoff_factor": 2.0,
        "max_delay": 10.0,
    },
    "rollback": {
        "strategy": "blue_green",
        "use_checkpoints": False,
    },
    "runtime": {
        "executable": "podman",
        "helper_image": "alpine:latest",
        "command_timeout": 120.0,
    },
    "ledger": {
        "path": None,
    },
}
