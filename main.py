"""
AutoTrader - Main Entry Point

Rule-driven automated trading with a paper brokerage and a backtester.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Backtest a strategy file
    python main.py --backtest --strategy-file strategy.json \\
        --symbols BTC/USDT --start 2024-01-01 --end 2024-06-30 --report out.md

    # Deploy a strategy file against a paper portfolio
    python main.py --run --strategy-file strategy.json --capital 10000
"""

import argparse
import asyncio
import json
import signal
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional, Tuple

import structlog

from autotrader.backtest import BacktestReport, BacktestRunner
from autotrader.core.config import app_config
from autotrader.core.models import BacktestParams, DeploymentConfig, StrategyDefinition
from autotrader.core.orchestrator import StrategyOrchestrator
from autotrader.core.presets import deployment_config_for, select_strategy_preset
from autotrader.core.scheduler import AsyncioScheduler
from autotrader.exchange import CcxtMarketDataProvider, PaperBroker
from autotrader.execution import OrderManager, TradeExecutionPipeline
from autotrader.notifications import NotificationDispatcher
from autotrader.risk import PositionSizer, RiskManager
from autotrader.rules import RuleEngine
from autotrader.storage.database import Database
from autotrader.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)

DEFAULT_PORTFOLIO_ID = "paper-default"


def load_strategy_file(path: str) -> Tuple[StrategyDefinition, Optional[Dict]]:
    """
    Load a strategy JSON file.

    The file is either a bare strategy definition or an object with
    ``strategy`` and optional ``deployment`` keys.
    """
    data = json.loads(Path(path).read_text())
    if "strategy" in data:
        return StrategyDefinition.model_validate(data["strategy"]), data.get("deployment")
    return StrategyDefinition.model_validate(data), None


class AutoTraderApp:
    """
    Wires the trading components together and runs deployed strategies
    until a shutdown signal arrives.
    """

    def __init__(self, portfolio_id: str = DEFAULT_PORTFOLIO_ID):
        self.portfolio_id = portfolio_id

        # Components
        self.database: Optional[Database] = None
        self.market_data: Optional[CcxtMarketDataProvider] = None
        self.broker: Optional[PaperBroker] = None
        self.scheduler: Optional[AsyncioScheduler] = None
        self.order_manager: Optional[OrderManager] = None
        self.orchestrator: Optional[StrategyOrchestrator] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self, capital: Decimal):
        """Initialize all components for paper trading."""
        logger.info(
            "app.initializing",
            portfolio_id=self.portfolio_id,
            trading_mode=app_config.system.trading_mode,
            capital=str(capital),
        )

        self.database = Database()
        await self.database.initialize()

        self.market_data = CcxtMarketDataProvider()
        await self.market_data.initialize()

        self.broker = PaperBroker(self.market_data)
        self.broker.open_account(self.portfolio_id, capital)

        risk_manager = RiskManager(broker=self.broker)
        rule_engine = RuleEngine(PositionSizer(), repository=self.database)
        pipeline = TradeExecutionPipeline(
            broker=self.broker,
            risk_manager=risk_manager,
            market_data=self.market_data,
            repository=self.database,
        )

        self.scheduler = AsyncioScheduler()
        self.order_manager = OrderManager(pipeline)
        await self.order_manager.load_pending_orders()

        self.orchestrator = StrategyOrchestrator(
            rule_engine=rule_engine,
            risk_manager=risk_manager,
            pipeline=pipeline,
            market_data=self.market_data,
            broker=self.broker,
            scheduler=self.scheduler,
            notifier=NotificationDispatcher(),
            order_manager=self.order_manager,
        )

        self._initialized = True
        logger.info("app.initialized")

    async def deploy(self, strategy: StrategyDefinition, config: DeploymentConfig):
        if not self._initialized:
            raise RuntimeError("App not initialized. Call initialize() first.")
        return await self.orchestrator.deploy(strategy, config)

    async def run(self):
        """Run until SIGINT/SIGTERM."""
        if not self._initialized:
            raise RuntimeError("App not initialized. Call initialize() first.")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            self.order_manager.start(self.scheduler)
            self.orchestrator.start_health_monitor()
            logger.info("app.running", instances=len(self.orchestrator.registry))
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error("app.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("app.shutting_down")

        if self.orchestrator:
            await self.orchestrator.shutdown()
        if self.order_manager:
            self.order_manager.stop()
        if self.scheduler:
            await self.scheduler.shutdown()
        if self.market_data:
            await self.market_data.close()
        if self.database:
            await self.database.close()

        logger.info("app.shutdown_complete")

    def _signal_handler(self):
        logger.info("app.shutdown_signal_received")
        self._shutdown_event.set()


def check_configuration() -> Dict:
    """Validate configuration. Returns 'valid', 'issues' and 'warnings'."""
    validation = app_config.validate_configuration()
    warnings = []

    if app_config.system.trading_mode == "paper":
        warnings.append("✓ Paper trading mode (simulated fills)")

    runtime = app_config.runtime.get()
    if not runtime.enabled:
        warnings.append("⚠️  Auto trading is disabled (ENABLED=false)")
    if not runtime.auto_execution_enabled:
        warnings.append("⚠️  Auto execution is off: intents are logged, not submitted")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "trading_mode": app_config.system.trading_mode,
    }


async def run_backtest(args) -> None:
    """Backtest a strategy file over historical bars."""
    strategy, _ = load_strategy_file(args.strategy_file)
    symbols = args.symbols.split(",") if args.symbols else (
        strategy.symbols or app_config.system.default_symbols
    )
    params = BacktestParams(
        start_date=datetime.fromisoformat(args.start),
        end_date=datetime.fromisoformat(args.end),
        initial_capital=Decimal(args.capital),
        symbols=symbols,
        commission=Decimal(str(app_config.backtest.commission)),
        slippage=Decimal(str(app_config.backtest.slippage)),
    )

    database = Database()
    await database.initialize()
    market_data = CcxtMarketDataProvider()
    await market_data.initialize()

    try:
        runner = BacktestRunner(market_data, database=database)
        print(f"\n📊 Running backtest for {strategy.name or strategy.id} on {', '.join(symbols)}...")
        result = await runner.run_backtest(strategy, params)

        report = BacktestReport(result)
        if args.report:
            report.print_full_report()
            path = report.save_markdown_report(args.report)
            print(f"✓ Report written to {path}")
        else:
            summary = report.get_summary_dict()
            for key, value in summary.items():
                print(f"   {key}: {value}")
        print(f"\n✓ Backtest {result.id} complete")
    finally:
        await market_data.close()
        await database.close()


async def run_strategy(args) -> None:
    """Deploy a strategy file and run until interrupted."""
    strategy, deployment = load_strategy_file(args.strategy_file)
    capital = Decimal(args.capital)
    portfolio_id = args.portfolio or DEFAULT_PORTFOLIO_ID

    if deployment:
        config = DeploymentConfig.model_validate(
            {"portfolio_id": portfolio_id, "initial_capital": capital, **deployment}
        )
    else:
        preset = select_strategy_preset(capital)
        print(f"✓ Using preset: {preset.name}")
        config = deployment_config_for(
            portfolio_id, capital, user_id=strategy.user_id,
            symbols=strategy.symbols or app_config.system.default_symbols,
        )

    # Rules in the file trade whichever portfolio this run deploys to
    strategy = strategy.model_copy(update={
        "rules": [r.model_copy(update={"portfolio_id": config.portfolio_id}) for r in strategy.rules]
    })

    app = AutoTraderApp(portfolio_id=config.portfolio_id)
    await app.initialize(config.initial_capital)
    try:
        instance = await app.deploy(strategy, config)
    except Exception:
        await app.shutdown()
        raise

    print(f"✓ Deployed {instance.id} ({config.execution_frequency.value} ticks)")
    await app.run()


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="AutoTrader - Rule-driven automated trading")

    # Actions
    parser.add_argument("--check", action="store_true", help="Check configuration and exit")
    parser.add_argument("--init-db", action="store_true", help="Initialize database and exit")
    parser.add_argument("--backtest", action="store_true", help="Backtest a strategy file")
    parser.add_argument("--run", action="store_true", help="Deploy a strategy file (paper)")

    # Strategy inputs
    parser.add_argument("--strategy-file", help="Strategy JSON file")
    parser.add_argument("--symbols", help="Comma-separated symbols (default: from strategy)")
    parser.add_argument("--start", help="Backtest start date (YYYY-MM-DD)")
    parser.add_argument("--end", help="Backtest end date (YYYY-MM-DD)")
    parser.add_argument("--capital", default="10000", help="Initial capital (default: 10000)")
    parser.add_argument("--portfolio", help="Portfolio ID for --run")
    parser.add_argument(
        "--report", metavar="PATH", help="Print the full backtest report and write it as Markdown"
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override LOG_LEVEL",
    )

    args = parser.parse_args()
    setup_logging(log_level=args.log_level)

    config_check = check_configuration()
    for warning in config_check["warnings"]:
        print(warning)

    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)
        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")
        print(f"\nTrading Mode: {config_check['trading_mode']}")
        print("\n" + "=" * 60)
        return

    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    if args.init_db:
        print("\n📦 Initializing database...")
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    if (args.backtest or args.run) and not args.strategy_file:
        parser.error("--strategy-file is required for --backtest and --run")

    try:
        if args.backtest:
            if not (args.start and args.end):
                parser.error("--start and --end are required for --backtest")
            await run_backtest(args)
        elif args.run:
            await run_strategy(args)
        else:
            parser.print_help()
    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
