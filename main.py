"""
Paper trading engine runner
"""
import argparse
import atexit
import fcntl
import logging
import os
import sys

from apscheduler.schedulers.blocking import BlockingScheduler

from perpbot.config import load_config
from perpbot.database import SessionLocal, init_db
from perpbot.services.execution import PositionLedger, SqlLedgerStore
from perpbot.services.market_data import MarketDataService
from perpbot.services.sentiment import SentimentService
from perpbot.services.trading_agent import TradingAgentService

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_agent() -> TradingAgentService:
    config = load_config()
    init_db()
    store = SqlLedgerStore(SessionLocal)
    ledger = PositionLedger(
        store,
        trailing=config.trailing,
        initial_balance=config.initial_balance,
        strict=config.strict_invariants,
    )
    market = MarketDataService(config.exchange)
    logger.info(f"Engine ready: strategy={config.strategy.name} symbols={list(config.symbols)} "
                f"balance={ledger.balance} USDT")
    return TradingAgentService(config, ledger, store, market, SentimentService())


def run_trading_cycle(agent: TradingAgentService) -> None:
    try:
        agent.run_cycle()
    except Exception as e:
        logger.error(f"Trading cycle error: {e}")


_lock_file = None


def _acquire_instance_lock():
    """Ensure only ONE engine process runs at a time using an OS-level file lock."""
    global _lock_file
    lock_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), ".engine.lock")
    _lock_file = open(lock_path, "w")
    try:
        fcntl.flock(_lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        _lock_file.write(str(os.getpid()))
        _lock_file.flush()
        atexit.register(_release_instance_lock)
    except OSError:
        logger.error(f"Another engine instance is already running. "
                     f"Stop it first or delete {lock_path}")
        sys.exit(1)


def _release_instance_lock():
    if _lock_file:
        fcntl.flock(_lock_file, fcntl.LOCK_UN)
        _lock_file.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Paper leveraged trading engine")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--interval", type=int, default=60, help="seconds between cycles")
    args = parser.parse_args(argv)

    _acquire_instance_lock()
    agent = build_agent()

    if args.once:
        agent.run_cycle()
        return

    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(run_trading_cycle, "interval", seconds=args.interval,
                      args=[agent], id="trading_cycle", max_instances=1, coalesce=True)
    logger.info(f"🚀 Scheduler started, one cycle every {args.interval}s")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
