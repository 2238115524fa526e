from __future__ import annotations

import logging

from crmlink.worker.runner import WorkerConfig, run_worker_forever


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    run_worker_forever(config=WorkerConfig())


if __name__ == "__main__":
    main()
