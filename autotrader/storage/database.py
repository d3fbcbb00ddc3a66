"""Database storage for rules, orders and backtest results."""
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Boolean, Column, String, DateTime, Numeric, Integer, JSON, Text,
    delete, func, select
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from autotrader.backtest.engine import BacktestResult
from autotrader.core.config import database_config
from autotrader.core.models import (
    Action, AutoTrade, BacktestParams, BacktestStatus, Condition, OrderSide,
    OrderStatus, PerformanceMetrics, PriceType, RiskMetrics, RuleType,
    TradeDetail, TradingRule,
)

Base = declarative_base()


class TradingRuleModel(Base):
    """SQLAlchemy model for trading rules."""
    __tablename__ = 'trading_rules'

    id = Column(String, primary_key=True)
    portfolio_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=True)
    rule_type = Column(String, nullable=False)
    conditions = Column(JSON, default=list)
    actions = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class AutoTradeModel(Base):
    """SQLAlchemy model for automated orders."""
    __tablename__ = 'auto_trades'

    id = Column(String, primary_key=True)
    portfolio_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    price_type = Column(String, nullable=False)
    trigger_price = Column(Numeric(36, 18), nullable=True)
    executed_price = Column(Numeric(36, 18), nullable=True)
    executed_quantity = Column(Numeric(36, 18), nullable=True)
    status = Column(String, nullable=False, index=True)
    rule_id = Column(String, nullable=True)
    recommendation_id = Column(String, nullable=True)
    strategy_id = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    metadata_json = Column(JSON, default=dict)


class BacktestResultModel(Base):
    """SQLAlchemy model for backtest runs."""
    __tablename__ = 'backtest_results'

    id = Column(String, primary_key=True)
    strategy_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    params = Column(JSON, nullable=False)
    initial_capital = Column(Numeric(36, 18), nullable=False)
    final_capital = Column(Numeric(36, 18), nullable=True)
    performance = Column(JSON, nullable=True)
    risk = Column(JSON, nullable=True)
    trades = Column(JSON, default=list)
    equity_curve = Column(JSON, default=list)
    drawdown_curve = Column(JSON, default=list)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)


def _curve_to_json(points: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            key: value.isoformat() if isinstance(value, datetime)
            else str(value) if isinstance(value, Decimal)
            else value
            for key, value in point.items()
        }
        for point in points
    ]


def _curve_from_json(points: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    restored = []
    for point in points or []:
        item = {}
        for key, value in point.items():
            if key == "timestamp":
                item[key] = datetime.fromisoformat(value)
            else:
                item[key] = Decimal(value)
        restored.append(item)
    return restored


class Database:
    """Async database interface."""

    def __init__(self, database_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        engine_kwargs: Dict[str, Any] = {"echo": False}
        if db_url.endswith(':memory:'):
            # One shared connection, or every session would see an empty database
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}

        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # =========================================================================
    # Rule operations
    # =========================================================================

    async def save_rule(self, rule: TradingRule):
        """Save or update a rule."""
        async with self.session_maker() as session:
            db_rule = await session.get(TradingRuleModel, rule.id)

            if db_rule is None:
                db_rule = TradingRuleModel(id=rule.id, created_at=rule.created_at)
                session.add(db_rule)

            db_rule.portfolio_id = rule.portfolio_id
            db_rule.name = rule.name
            db_rule.is_active = rule.is_active
            db_rule.priority = rule.priority
            db_rule.rule_type = rule.rule_type.value
            db_rule.conditions = [c.model_dump(mode="json") for c in rule.conditions]
            db_rule.actions = [a.model_dump(mode="json") for a in rule.actions]
            db_rule.updated_at = rule.updated_at

            await session.commit()

    async def get_rule(self, rule_id: str) -> Optional[TradingRule]:
        async with self.session_maker() as session:
            db_rule = await session.get(TradingRuleModel, rule_id)
            return self._rule_from_model(db_rule) if db_rule else None

    async def get_rules(self, portfolio_id: str, active_only: bool = False) -> List[TradingRule]:
        async with self.session_maker() as session:
            query = select(TradingRuleModel).where(TradingRuleModel.portfolio_id == portfolio_id)
            if active_only:
                query = query.where(TradingRuleModel.is_active.is_(True))
            query = query.order_by(
                func.coalesce(TradingRuleModel.priority, 0).desc(),
                TradingRuleModel.created_at.asc(),
            )

            result = await session.execute(query)
            return [self._rule_from_model(r) for r in result.scalars().all()]

    async def get_active_rules(self, portfolio_id: str) -> List[TradingRule]:
        """Active rules, priority descending then oldest first."""
        return await self.get_rules(portfolio_id, active_only=True)

    async def set_rule_active(self, rule_id: str, is_active: bool) -> Optional[TradingRule]:
        async with self.session_maker() as session:
            db_rule = await session.get(TradingRuleModel, rule_id)
            if db_rule is None:
                return None

            db_rule.is_active = is_active
            db_rule.updated_at = datetime.utcnow()
            await session.commit()
            return self._rule_from_model(db_rule)

    async def delete_rule(self, rule_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                delete(TradingRuleModel).where(TradingRuleModel.id == rule_id)
            )
            await session.commit()
            return result.rowcount > 0

    # =========================================================================
    # Order operations
    # =========================================================================

    async def save_order(self, order: AutoTrade):
        """Save or update an order."""
        async with self.session_maker() as session:
            db_order = await session.get(AutoTradeModel, order.id)

            if db_order is None:
                db_order = AutoTradeModel(
                    id=order.id,
                    portfolio_id=order.portfolio_id,
                    symbol=order.symbol,
                    side=order.side.value,
                    quantity=order.quantity,
                    price_type=order.price_type.value,
                    trigger_price=order.trigger_price,
                    rule_id=order.rule_id,
                    recommendation_id=order.recommendation_id,
                    strategy_id=order.strategy_id,
                    created_at=order.created_at,
                    expires_at=order.expires_at,
                )
                session.add(db_order)

            db_order.status = order.status.value
            db_order.executed_price = order.executed_price
            db_order.executed_quantity = order.executed_quantity
            db_order.failure_reason = order.failure_reason
            db_order.updated_at = order.updated_at
            db_order.executed_at = order.executed_at
            db_order.metadata_json = order.metadata

            await session.commit()

    async def get_order(self, order_id: str) -> Optional[AutoTrade]:
        """Get an order by ID."""
        async with self.session_maker() as session:
            db_order = await session.get(AutoTradeModel, order_id)

            if db_order is None:
                return None

            return self._order_from_model(db_order)

    def _order_filters(
        self,
        query,
        portfolio_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ):
        if portfolio_id:
            query = query.where(AutoTradeModel.portfolio_id == portfolio_id)
        if status:
            query = query.where(AutoTradeModel.status == OrderStatus(status).value)
        if symbol:
            query = query.where(AutoTradeModel.symbol == symbol)
        if start_date:
            query = query.where(AutoTradeModel.created_at >= start_date)
        if end_date:
            query = query.where(AutoTradeModel.created_at <= end_date)
        return query

    async def get_orders(
        self,
        portfolio_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AutoTrade]:
        """Get orders with optional filters, newest first."""
        async with self.session_maker() as session:
            query = self._order_filters(
                select(AutoTradeModel), portfolio_id, status, symbol, start_date, end_date
            )
            query = query.order_by(AutoTradeModel.created_at.desc()).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._order_from_model(o) for o in result.scalars().all()]

    async def count_orders(
        self,
        portfolio_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        symbol: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> int:
        async with self.session_maker() as session:
            query = self._order_filters(
                select(func.count()).select_from(AutoTradeModel),
                portfolio_id, status, symbol, start_date, end_date,
            )
            result = await session.execute(query)
            return int(result.scalar_one())

    async def get_pending_orders(self) -> List[AutoTrade]:
        """Every PENDING order, oldest first."""
        async with self.session_maker() as session:
            query = (
                select(AutoTradeModel)
                .where(AutoTradeModel.status == OrderStatus.PENDING.value)
                .order_by(AutoTradeModel.created_at.asc())
            )
            result = await session.execute(query)
            return [self._order_from_model(o) for o in result.scalars().all()]

    # =========================================================================
    # Backtest operations
    # =========================================================================

    async def save_backtest_result(self, result: BacktestResult):
        """Save or update a backtest run."""
        async with self.session_maker() as session:
            db_result = await session.get(BacktestResultModel, result.id)

            if db_result is None:
                db_result = BacktestResultModel(
                    id=result.id,
                    strategy_id=result.strategy_id,
                    params=result.params.model_dump(mode="json"),
                    initial_capital=result.initial_capital,
                    started_at=result.started_at,
                )
                session.add(db_result)

            db_result.status = result.status.value
            db_result.final_capital = result.final_capital
            # python mode keeps an infinite profit factor as a float
            db_result.performance = result.performance.model_dump() if result.performance else None
            db_result.risk = result.risk.model_dump() if result.risk else None
            db_result.trades = [t.model_dump(mode="json") for t in result.trades]
            db_result.equity_curve = _curve_to_json(result.equity_curve)
            db_result.drawdown_curve = _curve_to_json(result.drawdown_curve)
            db_result.completed_at = result.completed_at
            db_result.execution_time_ms = result.execution_time_ms
            db_result.error_message = result.error_message

            await session.commit()

    async def get_backtest_result(self, backtest_id: str) -> Optional[BacktestResult]:
        async with self.session_maker() as session:
            db_result = await session.get(BacktestResultModel, backtest_id)
            return self._backtest_from_model(db_result) if db_result else None

    async def get_backtest_results(self, strategy_id: str, limit: int = 50) -> List[BacktestResult]:
        """Runs for a strategy, newest first."""
        async with self.session_maker() as session:
            query = (
                select(BacktestResultModel)
                .where(BacktestResultModel.strategy_id == strategy_id)
                .order_by(BacktestResultModel.started_at.desc())
                .limit(limit)
            )
            result = await session.execute(query)
            return [self._backtest_from_model(r) for r in result.scalars().all()]

    async def delete_backtest_result(self, backtest_id: str) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                delete(BacktestResultModel).where(BacktestResultModel.id == backtest_id)
            )
            await session.commit()
            return result.rowcount > 0

    # =========================================================================
    # Conversions
    # =========================================================================

    def _rule_from_model(self, db_rule: TradingRuleModel) -> TradingRule:
        return TradingRule(
            id=db_rule.id,
            portfolio_id=db_rule.portfolio_id,
            name=db_rule.name,
            is_active=db_rule.is_active,
            priority=db_rule.priority,
            rule_type=RuleType(db_rule.rule_type),
            conditions=[Condition(**c) for c in db_rule.conditions or []],
            actions=[Action(**a) for a in db_rule.actions or []],
            created_at=db_rule.created_at,
            updated_at=db_rule.updated_at,
        )

    def _order_from_model(self, db_order: AutoTradeModel) -> AutoTrade:
        return AutoTrade(
            id=db_order.id,
            portfolio_id=db_order.portfolio_id,
            symbol=db_order.symbol,
            side=OrderSide(db_order.side),
            quantity=Decimal(str(db_order.quantity)),
            price_type=PriceType(db_order.price_type),
            trigger_price=Decimal(str(db_order.trigger_price)) if db_order.trigger_price is not None else None,
            executed_price=Decimal(str(db_order.executed_price)) if db_order.executed_price is not None else None,
            executed_quantity=(
                Decimal(str(db_order.executed_quantity)) if db_order.executed_quantity is not None else None
            ),
            status=OrderStatus(db_order.status),
            rule_id=db_order.rule_id,
            recommendation_id=db_order.recommendation_id,
            strategy_id=db_order.strategy_id,
            failure_reason=db_order.failure_reason,
            created_at=db_order.created_at,
            updated_at=db_order.updated_at,
            executed_at=db_order.executed_at,
            expires_at=db_order.expires_at,
            metadata=db_order.metadata_json or {},
        )

    def _backtest_from_model(self, db_result: BacktestResultModel) -> BacktestResult:
        return BacktestResult(
            id=db_result.id,
            strategy_id=db_result.strategy_id,
            params=BacktestParams(**db_result.params),
            status=BacktestStatus(db_result.status),
            initial_capital=Decimal(str(db_result.initial_capital)),
            final_capital=(
                Decimal(str(db_result.final_capital)) if db_result.final_capital is not None else None
            ),
            performance=PerformanceMetrics(**db_result.performance) if db_result.performance else None,
            risk=RiskMetrics(**db_result.risk) if db_result.risk else None,
            trades=[TradeDetail(**t) for t in db_result.trades or []],
            equity_curve=_curve_from_json(db_result.equity_curve),
            drawdown_curve=_curve_from_json(db_result.drawdown_curve),
            started_at=db_result.started_at,
            completed_at=db_result.completed_at,
            execution_time_ms=db_result.execution_time_ms,
            error_message=db_result.error_message,
        )
