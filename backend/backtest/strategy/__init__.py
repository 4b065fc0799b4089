"""Strategy plugin system.

Public API:
- Strategy / StrategyCallable: the two accepted strategy shapes
- StrategyContext / CandleView: what a strategy sees at each step
- SandboxedStrategy: runs untrusted strategy source in a child process
- register_strategy / create_strategy / list_strategies: built-in lookup

Importing this package auto-registers all built-in strategies.
"""

from backtest.strategy.protocol import (
    CandleView,
    Strategy,
    StrategyCallable,
    StrategyContext,
)
from backtest.strategy.registry import (
    create_strategy,
    get_strategy_class,
    list_strategies,
    register_strategy,
)
from backtest.strategy.sandbox import SandboxedStrategy

# Import built-in strategies to trigger auto-registration
import backtest.strategy.builtin  # noqa: F401

__all__ = [
    "CandleView",
    "SandboxedStrategy",
    "Strategy",
    "StrategyCallable",
    "StrategyContext",
    "create_strategy",
    "get_strategy_class",
    "list_strategies",
    "register_strategy",
]
