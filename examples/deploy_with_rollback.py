"""
swapguard Programmatic Deploy Example
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Deploy a freshly built backend binary from Python and report the
outcome. Equivalent to ``swapguard deploy --artifact <path>``.
"""

import logging
import sys

from swapguard import RollbackController, load_config


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    artifact = sys.argv[1] if len(sys.argv) > 1 else "./target/release/deepsplit_be"
    config = load_config("examples/swapguard.yaml")
    controller = RollbackController.from_config(config)

    attempt = controller.deploy(artifact)

    print("=" * 60)
    print(f"Attempt:    {attempt.id}")
    print(f"Status:     {attempt.status.value}")
    print(f"Bootstrap:  {attempt.bootstrap_state.value}")
    print(f"Message:    {attempt.message}")
    print("=" * 60)

    for past in controller.ledger.history(config.service.name, limit=5):
        started = f"{past.started_at:%Y-%m-%d %H:%M:%S}"
        print(f"  {started}  {past.status.value:22} {past.id}")

    sys.exit(attempt.status.exit_code())


if __name__ == "__main__":
    main()
