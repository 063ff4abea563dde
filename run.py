"""
Runnable script for the on-chain contract indexer.
"""

import argparse
import uvicorn
from onchain_indexer.main import main as run_indexer
from onchain_indexer.api.main import app as api_app
from onchain_indexer.config import settings
import multiprocessing
import time
import structlog

logger = structlog.get_logger()


def start_indexer_process(contract, chain, subscriber, restart=False, continuous=False):
    """Starts the indexer in a separate process."""
    logger.info("Starting indexer process...", contract=contract, chain=chain, continuous=continuous)
    run_indexer(contract, chain, subscriber, restart=restart, continuous=continuous)


def start_api_server():
    """Starts the FastAPI server."""
    logger.info("Starting API server...")
    uvicorn.run(api_app, host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="On-chain contract indexer")
    parser.add_argument("--contract", help="Contract address to index")
    parser.add_argument("--chain", default="ethereum", help="Chain name (ethereum, lisk)")
    parser.add_argument("--subscriber", default="local", help="Subscriber identity for the tier lookup")
    parser.add_argument("--restart", action="store_true", help="Rebuild a halted session from scratch")
    parser.add_argument(
        "--indexer-only",
        action="store_true",
        help="Run only the indexer (no API server)",
    )
    parser.add_argument(
        "--api-only",
        action="store_true",
        help="Run only the API server",
    )
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="Keep tailing new blocks after the backfill completes",
    )
    args = parser.parse_args()

    if args.api_only or not args.contract:
        if args.indexer_only:
            parser.error("--indexer-only requires --contract")
        start_api_server()
    elif args.indexer_only:
        run_indexer(args.contract, args.chain, args.subscriber, restart=args.restart, continuous=args.continuous)
    else:
        indexer_process = multiprocessing.Process(
            target=start_indexer_process,
            args=(args.contract, args.chain, args.subscriber, args.restart, args.continuous),
        )
        indexer_process.start()

        time.sleep(5)

        start_api_server()

        indexer_process.join()
