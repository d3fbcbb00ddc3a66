"""In-process registry of deployed strategy instances."""
from typing import Dict, Iterator, List, Optional

from autotrader.core.models import InstanceStatus, StrategyInstance


class StrategyRegistry:
    """Strategy instances keyed by strategy id."""

    def __init__(self):
        self._instances: Dict[str, StrategyInstance] = {}

    def __contains__(self, strategy_id: str) -> bool:
        return strategy_id in self._instances

    def __iter__(self) -> Iterator[StrategyInstance]:
        return iter(list(self._instances.values()))

    def __len__(self) -> int:
        return len(self._instances)

    def add(self, instance: StrategyInstance) -> None:
        self._instances[instance.strategy_id] = instance

    def get(self, strategy_id: str) -> Optional[StrategyInstance]:
        return self._instances.get(strategy_id)

    def remove(self, strategy_id: str) -> Optional[StrategyInstance]:
        return self._instances.pop(strategy_id, None)

    def for_portfolio(self, portfolio_id: str) -> List[StrategyInstance]:
        return [i for i in self._instances.values() if i.portfolio_id == portfolio_id]

    def with_status(self, *statuses: InstanceStatus) -> List[StrategyInstance]:
        return [i for i in self._instances.values() if i.status in statuses]

    def filter(
        self,
        portfolio_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[StrategyInstance]:
        instances = list(self._instances.values())
        if portfolio_id is not None:
            instances = [i for i in instances if i.portfolio_id == portfolio_id]
        if user_id is not None:
            instances = [i for i in instances if i.config.user_id == user_id]
        return instances
