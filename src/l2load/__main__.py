import argparse
import asyncio
import logging
import sys

import l2load.constants as C
from l2load.config import cfg
from l2load.logging_config import setup_logging
from l2load.node import DepositError

log = logging.getLogger("l2load")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="l2load")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generator", help="Run one transfer-generating wallet.")
    gen.add_argument("-i", "--id",
                     type=int,
                     required=True,
                     help="Wallet id; also the HD account index.",
                     )
    gen.add_argument("--host", default="0.0.0.0")
    gen.add_argument("-p", "--port", type=int, default=8000)
    gen.add_argument("--log-file", help="Log file path.")

    turner = sub.add_parser("blockturner", help="Run the block turner.")
    turner.add_argument("--log-file",
                        default=cfg["blockturner"]["log_file"],
                        help="Log file path.",
                        )
    return parser.parse_args(argv)


def main(argv=None):
    a = parse_args(argv)
    process = C.wallet_queue_name(a.id) if a.command == "generator" else "blockturner"
    setup_logging(a.log_file, process)

    exit_code = 0
    try:
        if a.command == "generator":
            from l2load.app import serve_generator
            asyncio.run(serve_generator(a.id, host=a.host, port=a.port))
        else:
            from l2load.blockturner import run_block_turner
            asyncio.run(run_block_turner())
    except* DepositError as eg:
        for exc in eg.exceptions:
            log.critical("Fatal: %s", exc)
        exit_code = 1
    except* KeyboardInterrupt:
        log.info("Interrupted")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
