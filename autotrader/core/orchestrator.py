"""Strategy orchestrator - runs deployed strategies on a schedule.

Each deployed strategy gets one periodic tick. A tick:

1. Checks the portfolio-wide emergency drawdown and the instance's own
   drawdown / daily-loss limits
2. Evaluates the strategy's rules per symbol and turns the winning rule's
   actions into order intents
3. Passes each intent through the runtime gates (confidence, risk level,
   daily order cap, cooldown) and the risk adjuster
4. Submits the surviving order through the execution pipeline
5. Refreshes the instance's performance from the portfolio snapshot

Consecutive tick failures trip a per-instance circuit breaker.
"""
import asyncio
import time
from collections import deque
from datetime import date, datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Deque, Dict, List, Optional, Tuple

import numpy as np
import structlog

from autotrader.backtest.metrics import sharpe_ratio
from autotrader.core.config import (
    OrchestratorConfig, RuntimeConfig, RuntimeConfigStore, app_config,
)
from autotrader.core.exceptions import (
    AccessDeniedError, InvalidStateTransitionError, PortfolioNotFoundError,
    RuleValidationError, StrategyAlreadyDeployedError, StrategyNotFoundError,
)
from autotrader.core.models import (
    ActionResult, DeploymentConfig, InstancePerformance, InstanceStatus,
    OrderSide, OrderStatus, PortfolioSnapshot, PriceType, RiskLevel,
    StrategyDefinition, StrategyInstance, TradeRequest, TradeResult,
    TradingContext, TradingRule,
)
from autotrader.core.registry import StrategyRegistry
from autotrader.core.scheduler import ScheduleHandle, Scheduler
from autotrader.exchange.base import BrokerageClient, MarketDataProvider
from autotrader.execution.order_manager import OrderManager
from autotrader.execution.pipeline import TradeExecutionPipeline
from autotrader.notifications.notifier import (
    NotificationDispatcher, NotificationEvent, NotificationType,
)
from autotrader.risk.adjusters import PassThroughRiskAdjuster, RiskAdjuster, RiskAssessment
from autotrader.risk.risk_manager import RiskLimits, RiskManager
from autotrader.rules.engine import RuleEngine

logger = structlog.get_logger(__name__)

EMERGENCY_STOP_REASON = "Emergency stop triggered"
LOW_RISK_VOLATILITY = 0.02
MEDIUM_RISK_VOLATILITY = 0.05


def signal_risk_level(volatility: Optional[float]) -> RiskLevel:
    """Grade an intent by the symbol's volatility. Unknown counts as medium."""
    if volatility is None:
        return RiskLevel.MEDIUM
    if volatility < LOW_RISK_VOLATILITY:
        return RiskLevel.LOW
    if volatility < MEDIUM_RISK_VOLATILITY:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


class StrategyOrchestrator:
    """
    Deploys strategies and drives their periodic ticks.

    Responsibilities:
    - Strategy lifecycle (deploy, pause, resume, stop, emergency stop)
    - Per-tick rule evaluation and order submission
    - Runtime gating and per-instance risk limits
    - Circuit breaker and timer health checks
    """

    def __init__(
        self,
        rule_engine: RuleEngine,
        risk_manager: RiskManager,
        pipeline: TradeExecutionPipeline,
        market_data: MarketDataProvider,
        broker: BrokerageClient,
        scheduler: Scheduler,
        registry: Optional[StrategyRegistry] = None,
        notifier: Optional[NotificationDispatcher] = None,
        runtime_config: Optional[RuntimeConfigStore] = None,
        risk_adjuster: Optional[RiskAdjuster] = None,
        order_manager: Optional[OrderManager] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.rule_engine = rule_engine
        self.risk_manager = risk_manager
        self.pipeline = pipeline
        self.market_data = market_data
        self.broker = broker
        self.scheduler = scheduler
        self.registry = registry if registry is not None else StrategyRegistry()
        self.notifier = notifier or NotificationDispatcher()
        self.runtime_config = runtime_config or app_config.runtime
        self.risk_adjuster = risk_adjuster or PassThroughRiskAdjuster()
        self.order_manager = order_manager
        self.config = config or app_config.orchestrator

        # Timers and tick serialization
        self._handles: Dict[str, ScheduleHandle] = {}
        self._tick_locks: Dict[str, asyncio.Lock] = {}
        self._health_handle: Optional[ScheduleHandle] = None

        # Runtime gate state
        self._order_day: date = datetime.utcnow().date()
        self._orders_today = 0
        self._last_order_at: Dict[Tuple[str, str], datetime] = {}

        # Daily returns per strategy for the rolling Sharpe ratio
        self._daily_returns: Dict[str, Deque[float]] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def deploy(
        self,
        strategy: StrategyDefinition,
        config: DeploymentConfig,
    ) -> StrategyInstance:
        """
        Deploy a strategy and start its tick timer.

        Raises:
            StrategyAlreadyDeployedError: If the strategy is running or paused
            RuleValidationError: If any rule fails validation or trades
                another portfolio
            AccessDeniedError: If the deployment user does not own the strategy
        """
        existing = self.registry.get(strategy.id)
        if existing is not None and existing.status in (InstanceStatus.RUNNING, InstanceStatus.PAUSED):
            raise StrategyAlreadyDeployedError("Strategy is already deployed")

        if strategy.user_id and config.user_id and strategy.user_id != config.user_id:
            raise AccessDeniedError("Access denied")

        errors = self._validate_strategy(strategy, config.portfolio_id)
        if errors:
            raise RuleValidationError(
                f"Strategy validation failed: {', '.join(errors)}", errors
            )

        capital = config.initial_capital
        instance = StrategyInstance(
            id=f"{strategy.id}-{int(time.time() * 1000)}",
            strategy_id=strategy.id,
            strategy=strategy,
            config=config,
            performance=InstancePerformance(
                current_value=capital,
                peak_value=capital,
                day_start_value=capital,
            ),
        )

        self.registry.add(instance)
        self._daily_returns[strategy.id] = deque(maxlen=252)
        self._start_timer(instance)

        logger.info(
            "orchestrator.strategy_deployed",
            strategy_id=strategy.id,
            instance_id=instance.id,
            portfolio_id=config.portfolio_id,
            mode=config.mode.value,
            frequency=config.execution_frequency.value,
            symbols=self._symbols_for(instance),
        )
        self._notify(
            instance,
            NotificationType.STRATEGY_STATUS,
            f"Strategy {strategy.name or strategy.id} deployed",
            status=instance.status.value,
        )
        return instance

    def _validate_strategy(self, strategy: StrategyDefinition, portfolio_id: str) -> List[str]:
        if not strategy.rules:
            return ["Strategy must have at least one rule"]

        errors = []
        for rule in strategy.rules:
            result = self.rule_engine.validate(rule)
            errors.extend(f"{rule.name}: {error}" for error in result.errors)
            if rule.portfolio_id != portfolio_id:
                errors.append(
                    f"{rule.name}: Rule belongs to portfolio {rule.portfolio_id}, not {portfolio_id}"
                )
        return errors

    async def pause(self, strategy_id: str, user_id: Optional[str] = None) -> StrategyInstance:
        instance = self._require_instance(strategy_id, user_id)
        instance.pause()
        self._cancel_timer(strategy_id)

        logger.info("orchestrator.strategy_paused", strategy_id=strategy_id)
        self._notify(instance, NotificationType.STRATEGY_STATUS, "Strategy paused", status="paused")
        return instance

    async def resume(self, strategy_id: str, user_id: Optional[str] = None) -> StrategyInstance:
        instance = self._require_instance(strategy_id, user_id)
        if instance.status != InstanceStatus.PAUSED:
            raise InvalidStateTransitionError("Strategy is not paused")

        instance.resume()
        self._start_timer(instance)

        logger.info("orchestrator.strategy_resumed", strategy_id=strategy_id)
        self._notify(instance, NotificationType.STRATEGY_STATUS, "Strategy resumed", status="running")
        return instance

    async def stop(
        self,
        strategy_id: str,
        user_id: Optional[str] = None,
        reason: str = "Stopped by user",
    ) -> StrategyInstance:
        """Stop a strategy and drop it from the registry."""
        instance = self._require_instance(strategy_id, user_id)
        self._cancel_timer(strategy_id)
        instance.stop(reason)
        self.registry.remove(strategy_id)

        logger.info("orchestrator.strategy_stopped", strategy_id=strategy_id, reason=reason)
        self._notify(instance, NotificationType.STRATEGY_STATUS, f"Strategy stopped: {reason}", status="stopped")
        return instance

    async def emergency_stop(
        self,
        portfolio_id: str,
        reason: str = EMERGENCY_STOP_REASON,
    ) -> List[StrategyInstance]:
        """Stop every live instance on a portfolio and halt its trading."""
        stopped = []
        live = [
            i for i in self.registry.for_portfolio(portfolio_id)
            if i.status in (InstanceStatus.RUNNING, InstanceStatus.PAUSED)
        ]

        for instance in live:
            self._cancel_timer(instance.strategy_id)
            instance.stop(reason)
            self.registry.remove(instance.strategy_id)
            stopped.append(instance)
            self._notify(instance, NotificationType.EMERGENCY_STOP, reason)

        self.risk_manager.trigger_emergency_stop(portfolio_id, reason)

        logger.critical(
            "orchestrator.emergency_stop",
            portfolio_id=portfolio_id,
            reason=reason,
            stopped=[i.strategy_id for i in stopped],
        )
        return stopped

    def _require_instance(self, strategy_id: str, user_id: Optional[str]) -> StrategyInstance:
        instance = self.registry.get(strategy_id)
        if instance is None or instance.status in (InstanceStatus.STOPPED, InstanceStatus.ERROR):
            raise StrategyNotFoundError("Strategy not found or not running")
        if user_id is not None and instance.config.user_id not in (None, user_id):
            raise AccessDeniedError("Access denied")
        return instance

    # =========================================================================
    # Timers
    # =========================================================================

    def _start_timer(self, instance: StrategyInstance):
        self._cancel_timer(instance.strategy_id)
        strategy_id = instance.strategy_id

        async def job():
            await self.run_tick(strategy_id)

        self._handles[strategy_id] = self.scheduler.schedule(
            instance.config.execution_frequency.interval_seconds,
            job,
            name=f"strategy:{strategy_id}",
        )

    def _cancel_timer(self, strategy_id: str):
        handle = self._handles.pop(strategy_id, None)
        if handle is not None:
            self.scheduler.cancel(handle)

    def has_timer(self, strategy_id: str) -> bool:
        handle = self._handles.get(strategy_id)
        return handle is not None and handle.is_active

    async def health_check(self) -> int:
        """Restart timers of running instances that lost theirs."""
        restarted = 0
        for instance in self.registry.with_status(InstanceStatus.RUNNING):
            if not self.has_timer(instance.strategy_id):
                self._start_timer(instance)
                restarted += 1
                logger.warning("orchestrator.timer_restarted", strategy_id=instance.strategy_id)

        logger.debug(
            "orchestrator.health_check",
            instances=len(self.registry),
            restarted=restarted,
        )
        return restarted

    def start_health_monitor(self):
        if self._health_handle is not None:
            return
        self._health_handle = self.scheduler.schedule(
            self.config.health_check_interval_seconds,
            self.health_check,
            name="strategy_health_check",
        )

    async def shutdown(self):
        """Cancel every timer and wait for pending notifications."""
        for strategy_id in list(self._handles):
            self._cancel_timer(strategy_id)
        if self._health_handle is not None:
            self.scheduler.cancel(self._health_handle)
            self._health_handle = None

        await self.notifier.drain()
        logger.info("orchestrator.shutdown", instances=len(self.registry))

    # =========================================================================
    # Tick
    # =========================================================================

    async def run_tick(self, strategy_id: str) -> int:
        """
        Run one bounded tick with circuit-breaker accounting.

        Returns the number of orders submitted. Overlapping ticks for the
        same strategy are skipped.
        """
        instance = self.registry.get(strategy_id)
        if instance is None or not instance.is_running:
            return 0

        lock = self._tick_locks.setdefault(strategy_id, asyncio.Lock())
        if lock.locked():
            logger.debug("orchestrator.tick_overlap_skipped", strategy_id=strategy_id)
            return 0

        async with lock:
            try:
                submitted = await asyncio.wait_for(
                    self.tick(instance), timeout=self.config.tick_timeout_seconds
                )
            except asyncio.TimeoutError:
                await self._handle_tick_error(instance, "Strategy iteration timeout")
                return 0
            except Exception as e:
                await self._handle_tick_error(instance, str(e))
                return 0

        instance.clear_errors()
        return submitted

    async def tick(self, instance: StrategyInstance) -> int:
        """One evaluation pass over the instance's symbols."""
        if not instance.is_running:
            return 0

        log = logger.bind(strategy_id=instance.strategy_id)
        runtime = self.runtime_config.get()
        if not runtime.enabled:
            log.debug("orchestrator.tick_skipped_disabled")
            return 0

        portfolio_id = instance.portfolio_id
        portfolio = await self.broker.portfolio_snapshot(portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError("Portfolio not found")

        if await self.risk_manager.check_emergency_stop(portfolio_id, portfolio):
            await self.emergency_stop(portfolio_id)
            return 0

        self._update_performance(instance, portfolio)

        violations = self._check_risk_limits(instance)
        if violations:
            self._handle_risk_breach(instance, violations)
            return 0

        symbols = self._symbols_for(instance)
        if not symbols:
            log.debug("orchestrator.no_symbols")
            instance.last_tick_at = datetime.utcnow()
            return 0

        limits = RiskLimits.for_deployment(
            instance.config.risk_limits,
            instance.config.max_positions,
            self.risk_manager.config,
        )
        owned = [r for r in instance.strategy.rules if r.portfolio_id == portfolio_id]
        if len(owned) < len(instance.strategy.rules):
            log.warning(
                "orchestrator.rules_filtered",
                portfolio_id=portfolio_id,
                dropped=len(instance.strategy.rules) - len(owned),
            )
        rules = self.rule_engine.prioritize_rules(owned)
        submitted = 0

        for symbol in symbols:
            price = await self.market_data.current_price(symbol)
            if price is None or price <= 0:
                log.warning("orchestrator.no_price", symbol=symbol)
                continue

            context = TradingContext.from_portfolio(
                portfolio,
                symbol,
                price,
                technical_indicators=await self.market_data.technical_indicators(symbol),
            )
            winners = self.rule_engine.conflict_resolution(
                self.rule_engine.evaluate_rules(rules, context)
            )
            if not winners:
                continue

            rule = winners[0]
            intents = self.rule_engine.execute_actions(rule.actions, context, rule_id=rule.id)
            intent = next((i for i in intents if i.is_actionable), None)
            if intent is None:
                log.debug(
                    "orchestrator.no_actionable_intent",
                    rule_id=rule.id,
                    symbol=symbol,
                    errors=[i.error for i in intents if i.error],
                )
                continue

            result = await self._process_intent(instance, rule, intent, context, limits, runtime)
            if result is None:
                continue

            submitted += 1
            if result.success:
                portfolio = await self.broker.portfolio_snapshot(portfolio_id) or portfolio

        self._update_performance(instance, portfolio)
        instance.last_tick_at = datetime.utcnow()

        log.debug(
            "orchestrator.tick_complete",
            symbols=len(symbols),
            submitted=submitted,
            value=str(instance.performance.current_value),
        )
        return submitted

    def _symbols_for(self, instance: StrategyInstance) -> List[str]:
        return list(instance.config.symbols or instance.strategy.symbols)

    # =========================================================================
    # Gating and submission
    # =========================================================================

    async def _process_intent(
        self,
        instance: StrategyInstance,
        rule: TradingRule,
        intent: ActionResult,
        context: TradingContext,
        limits: RiskLimits,
        runtime: RuntimeConfig,
    ) -> Optional[TradeResult]:
        """Gate, adjust and submit one intent. Returns None when nothing was submitted."""
        skip_reason = self._gate(instance, intent, context, runtime)
        if skip_reason:
            logger.info(
                "orchestrator.intent_gated",
                strategy_id=instance.strategy_id,
                symbol=intent.symbol,
                side=intent.type.value,
                reason=skip_reason,
            )
            return None

        try:
            assessment = await self.risk_adjuster.assess(rule, context)
        except Exception as e:
            logger.warning("orchestrator.risk_assessment_failed", rule_id=rule.id, error=str(e))
            assessment = RiskAssessment(approved=True)

        if not assessment.approved:
            logger.info(
                "orchestrator.intent_rejected_by_adjuster",
                strategy_id=instance.strategy_id,
                rule_id=rule.id,
                reason=assessment.reason,
            )
            return None

        try:
            quantity = await self.risk_adjuster.adjust_quantity(intent.quantity, context)
        except Exception as e:
            logger.warning("orchestrator.quantity_adjustment_failed", rule_id=rule.id, error=str(e))
            quantity = intent.quantity

        if intent.type == OrderSide.BUY:
            quantity = min(quantity, self._max_quantity(instance, context.current_price))
        if quantity <= 0:
            logger.info(
                "orchestrator.intent_too_small",
                strategy_id=instance.strategy_id,
                symbol=intent.symbol,
            )
            return None

        if not runtime.auto_execution_enabled:
            logger.info(
                "orchestrator.intent_not_executed",
                strategy_id=instance.strategy_id,
                symbol=intent.symbol,
                side=intent.type.value,
                quantity=str(quantity),
                price=str(intent.price),
            )
            return None

        volatility = None
        if context.technical_indicators is not None:
            volatility = context.technical_indicators.volatility

        request = TradeRequest(
            portfolio_id=instance.portfolio_id,
            symbol=intent.symbol,
            side=intent.type,
            quantity=quantity,
            price=intent.price if intent.price_type != PriceType.MARKET else None,
            price_type=intent.price_type,
            rule_id=rule.id,
            strategy_id=instance.strategy_id,
            recommendation_id=context.recommendation.id if context.recommendation else None,
            volatility=volatility,
        )
        result = await self._submit(request, limits)
        self._record_order(instance.portfolio_id, intent.symbol)
        self._record_trade(instance, request, result)
        return result

    def _gate(
        self,
        instance: StrategyInstance,
        intent: ActionResult,
        context: TradingContext,
        runtime: RuntimeConfig,
    ) -> Optional[str]:
        """Return why the runtime gates block this intent, or None."""
        recommendation = context.recommendation
        if recommendation is not None and recommendation.confidence < runtime.minimum_confidence:
            return f"confidence {recommendation.confidence} below {runtime.minimum_confidence}"

        volatility = None
        if context.technical_indicators is not None:
            volatility = context.technical_indicators.volatility
        level = signal_risk_level(volatility)
        if level.rank > runtime.maximum_risk_level.rank:
            return f"risk level {level.value} above {runtime.maximum_risk_level.value}"

        self._roll_order_day()
        if self._orders_today >= runtime.max_orders_per_day:
            return f"daily order cap {runtime.max_orders_per_day} reached"

        last = self._last_order_at.get((instance.portfolio_id, intent.symbol))
        if last is not None and datetime.utcnow() - last < timedelta(minutes=runtime.cooldown_minutes):
            return f"cooldown of {runtime.cooldown_minutes} minutes active"

        return None

    def _max_quantity(self, instance: StrategyInstance, price: Decimal) -> Decimal:
        max_value = (
            instance.performance.current_value
            * instance.config.risk_limits.max_position_size / Decimal("100")
        )
        return (max_value / price).quantize(Decimal("1"), rounding=ROUND_DOWN)

    async def _submit(self, request: TradeRequest, limits: RiskLimits) -> TradeResult:
        if request.price_type != PriceType.MARKET and self.order_manager is not None:
            order = await self.order_manager.place_order(request, limits=limits)
            return TradeResult(success=True, trade_id=order.id, status=order.status)
        return await self.pipeline.execute_trade(request, limits=limits)

    def _roll_order_day(self):
        today = datetime.utcnow().date()
        if today != self._order_day:
            self._order_day = today
            self._orders_today = 0

    def _record_order(self, portfolio_id: str, symbol: str):
        self._roll_order_day()
        self._orders_today += 1
        self._last_order_at[(portfolio_id, symbol)] = datetime.utcnow()

    def _record_trade(self, instance: StrategyInstance, request: TradeRequest, result: TradeResult):
        if not result.success:
            logger.warning(
                "orchestrator.order_failed",
                strategy_id=instance.strategy_id,
                symbol=request.symbol,
                error=result.error,
            )
            return

        if result.status != OrderStatus.EXECUTED:
            logger.info(
                "orchestrator.order_resting",
                strategy_id=instance.strategy_id,
                trade_id=result.trade_id,
                symbol=request.symbol,
                side=request.side.value,
                quantity=str(request.quantity),
                trigger_price=str(request.price) if request.price is not None else None,
                status=result.status.value,
            )
            return

        perf = instance.performance
        perf.total_trades += 1
        if result.realized_pnl is not None:
            perf.closed_trades += 1
            perf.realized_pnl_today += result.realized_pnl
            if result.realized_pnl > 0:
                perf.profitable_trades += 1
            perf.win_rate = Decimal(perf.profitable_trades) / Decimal(perf.closed_trades) * 100

        logger.info(
            "orchestrator.order_submitted",
            strategy_id=instance.strategy_id,
            trade_id=result.trade_id,
            symbol=request.symbol,
            side=request.side.value,
            quantity=str(result.executed_quantity or request.quantity),
            price=str(result.executed_price) if result.executed_price is not None else None,
            status=result.status.value,
        )
        self._notify(
            instance,
            NotificationType.TRADE_EXECUTED,
            f"{request.side.value.upper()} {request.symbol}",
            trade_id=result.trade_id,
            quantity=str(result.executed_quantity or request.quantity),
            price=str(result.executed_price) if result.executed_price is not None else None,
        )

    # =========================================================================
    # Risk limits and performance
    # =========================================================================

    def _check_risk_limits(self, instance: StrategyInstance) -> List[str]:
        perf = instance.performance
        limits = instance.config.risk_limits
        violations = []

        if perf.current_drawdown > limits.max_drawdown:
            violations.append(
                f"Current drawdown ({perf.current_drawdown:.2f}%) exceeds limit ({limits.max_drawdown}%)"
            )

        daily_pnl = perf.current_value - perf.day_start_value
        if daily_pnl < -limits.daily_loss_limit:
            violations.append(
                f"Daily loss (${abs(daily_pnl):.2f}) exceeds limit (${limits.daily_loss_limit})"
            )
        return violations

    def _handle_risk_breach(self, instance: StrategyInstance, violations: List[str]):
        instance.pause()
        self._cancel_timer(instance.strategy_id)

        logger.warning(
            "orchestrator.risk_breach",
            strategy_id=instance.strategy_id,
            violations=violations,
        )
        self._notify(
            instance,
            NotificationType.RISK_BREACH,
            f"Risk limits breached: {'; '.join(violations)}",
            violations=violations,
        )

    def _update_performance(self, instance: StrategyInstance, portfolio: PortfolioSnapshot):
        perf = instance.performance
        now = datetime.utcnow()
        value = portfolio.total_value

        if perf.last_updated.date() != now.date():
            if perf.day_start_value > 0:
                returns = self._daily_returns.setdefault(instance.strategy_id, deque(maxlen=252))
                returns.append(float((perf.current_value - perf.day_start_value) / perf.day_start_value))
                perf.sharpe_ratio = Decimal(str(round(sharpe_ratio(np.array(returns)), 4)))
            perf.day_start_value = perf.current_value
            perf.realized_pnl_today = Decimal("0")

        perf.current_value = value
        perf.peak_value = max(perf.peak_value, value)
        if perf.peak_value > 0:
            perf.current_drawdown = (perf.peak_value - value) / perf.peak_value * 100
        perf.max_drawdown = max(perf.max_drawdown, perf.current_drawdown)

        initial = instance.config.initial_capital
        perf.total_return = (value - initial) / initial * 100
        if perf.day_start_value > 0:
            perf.daily_return = (value - perf.day_start_value) / perf.day_start_value * 100

        perf.unrealized_pnl = sum(
            (p.current_value - p.cost_basis for p in portfolio.positions), Decimal("0")
        )
        perf.last_updated = now

    async def _handle_tick_error(self, instance: StrategyInstance, message: str):
        count = instance.record_error(message)
        logger.error(
            "orchestrator.tick_error",
            strategy_id=instance.strategy_id,
            error=message,
            consecutive_errors=count,
        )

        if count >= self.config.max_consecutive_errors and instance.is_running:
            instance.transition_to(InstanceStatus.ERROR)
            self._cancel_timer(instance.strategy_id)
            logger.critical(
                "orchestrator.circuit_breaker_tripped",
                strategy_id=instance.strategy_id,
                errors=count,
            )

        self._notify(
            instance,
            NotificationType.ERROR,
            f"Strategy error: {message}",
            error_count=count,
            status=instance.status.value,
        )

    # =========================================================================
    # Queries and runtime config
    # =========================================================================

    def get_instance(self, strategy_id: str) -> Optional[StrategyInstance]:
        return self.registry.get(strategy_id)

    def list_instances(
        self,
        portfolio_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[StrategyInstance]:
        return self.registry.filter(portfolio_id=portfolio_id, user_id=user_id)

    def get_performance(self, strategy_id: str) -> InstancePerformance:
        instance = self.registry.get(strategy_id)
        if instance is None:
            raise StrategyNotFoundError("Strategy not found or not running")
        return instance.performance

    def update_runtime_config(self, **changes) -> RuntimeConfig:
        config = self.runtime_config.update(**changes)
        logger.info("orchestrator.runtime_config_updated", changes=list(changes))
        return config

    # =========================================================================
    # Notifications
    # =========================================================================

    def _notify(self, instance: StrategyInstance, type_: NotificationType, message: str, **payload):
        self.notifier.notify(
            NotificationEvent(
                type=type_,
                portfolio_id=instance.portfolio_id,
                strategy_id=instance.strategy_id,
                message=message,
                payload=payload,
            ),
            instance.config.notifications,
        )
