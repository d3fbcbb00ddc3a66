"""
Backtest Report Generator.

Renders a finished BacktestResult as:
- A console report (performance, risk, trade statistics, drawdown)
- A Markdown report suitable for saving next to the run
"""

import math
from pathlib import Path
from typing import Dict, Union

import pandas as pd

from autotrader.backtest.engine import BacktestResult
from autotrader.core.models import PerformanceMetrics, RiskMetrics


def _fmt_ratio(value: float) -> str:
    return "inf" if math.isinf(value) else f"{value:.2f}"


class BacktestReport:
    """Generate backtest reports."""

    def __init__(self, result: BacktestResult):
        self.result = result
        self.performance = result.performance or PerformanceMetrics()
        self.risk = result.risk or RiskMetrics()

    def print_full_report(self):
        """Print complete backtest report to console."""
        self._print_header()
        self._print_performance_summary()
        self._print_risk_metrics()
        self._print_trade_statistics()
        self._print_monthly_returns()
        self._print_conclusion()

    def generate_markdown_report(self) -> str:
        """Generate markdown formatted report."""
        params = self.result.params
        perf = self.performance
        risk = self.risk
        lines = []

        lines.append("# Strategy Backtest Report")
        lines.append("")
        lines.append(f"**Strategy:** {self.result.strategy_id}")
        lines.append(
            f"**Test Period:** {params.start_date.strftime('%Y-%m-%d')} to {params.end_date.strftime('%Y-%m-%d')}"
        )
        lines.append(f"**Symbols:** {', '.join(params.symbols)}")
        lines.append(f"**Initial Capital:** ${self.result.initial_capital:,.2f}")
        lines.append(f"**Final Capital:** ${self.result.final_capital or 0:,.2f}")
        lines.append(f"**Status:** {self.result.status.value}")
        lines.append("")

        lines.append("## Performance Summary")
        lines.append("")
        lines.append("| Metric | Value |")
        lines.append("|--------|-------|")
        lines.append(f"| Total Return | {perf.total_return:+.2f}% |")
        lines.append(f"| Annualized Return | {perf.annualized_return:+.2f}% |")
        lines.append(f"| Max Drawdown | {perf.max_drawdown:.2f}% |")
        lines.append(f"| Sharpe Ratio | {perf.sharpe_ratio:.2f} |")
        lines.append(f"| Sortino Ratio | {risk.sortino_ratio:.2f} |")
        lines.append(f"| Calmar Ratio | {risk.calmar_ratio:.2f} |")
        lines.append("")

        lines.append("## Risk")
        lines.append("")
        lines.append("| Metric | Value |")
        lines.append("|--------|-------|")
        lines.append(f"| Volatility (Annual) | {risk.volatility:.2f}% |")
        lines.append(f"| VaR 95% | {risk.var_95:.2f}% |")
        lines.append(f"| Expected Shortfall 95% | {risk.expected_shortfall:.2f}% |")
        lines.append("")

        lines.append("## Trades")
        lines.append("")
        lines.append("| Metric | Value |")
        lines.append("|--------|-------|")
        lines.append(f"| Closed Trades | {perf.total_trades} |")
        lines.append(f"| Win Rate | {perf.win_rate:.1f}% |")
        lines.append(f"| Profit Factor | {_fmt_ratio(perf.profit_factor)} |")
        lines.append(f"| Average Win | ${perf.average_win:,.2f} |")
        lines.append(f"| Average Loss | ${perf.average_loss:,.2f} |")
        lines.append(f"| Largest Win | ${perf.largest_win:,.2f} |")
        lines.append(f"| Largest Loss | ${perf.largest_loss:,.2f} |")
        lines.append(f"| Longest Win Streak | {perf.consecutive_wins} |")
        lines.append(f"| Longest Loss Streak | {perf.consecutive_losses} |")
        lines.append("")

        if self.result.error_message:
            lines.append("## Error")
            lines.append("")
            lines.append(self.result.error_message)
            lines.append("")

        return "\n".join(lines)

    def save_markdown_report(self, path: Union[str, Path]) -> Path:
        """Write the Markdown report to ``path``, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.generate_markdown_report())
        return path

    def _print_header(self):
        params = self.result.params
        print("\n" + "=" * 80)
        print("STRATEGY BACKTEST REPORT")
        print("=" * 80)
        print(f"\nStrategy:        {self.result.strategy_id}")
        print(
            f"Test Period:     {params.start_date.strftime('%Y-%m-%d')} to {params.end_date.strftime('%Y-%m-%d')}"
        )
        print(f"Symbols:         {', '.join(params.symbols)}")
        print(f"Initial Capital: ${self.result.initial_capital:,.2f}")
        print(f"Final Capital:   ${self.result.final_capital or 0:,.2f}")
        duration_days = (params.end_date - params.start_date).days
        print(f"Duration:        {duration_days} days ({duration_days/365:.1f} years)")
        if self.result.execution_time_ms is not None:
            print(f"Run Time:        {self.result.execution_time_ms} ms")

    def _print_performance_summary(self):
        print("\n" + "-" * 80)
        print("PERFORMANCE SUMMARY")
        print("-" * 80)

        perf = self.performance
        print(f"\n  Total Return:          {perf.total_return:+.2f}%")
        print(f"  Annualized Return:     {perf.annualized_return:+.2f}%")
        print(f"  Sharpe Ratio:          {perf.sharpe_ratio:.2f}")

        if perf.total_return > 0:
            print("  Status:                PROFITABLE")
        else:
            print("  Status:                LOSS")

    def _print_risk_metrics(self):
        print("\n" + "-" * 80)
        print("RISK METRICS")
        print("-" * 80)

        risk = self.risk
        print(f"\n  Max Drawdown:          {self.performance.max_drawdown:.2f}%")
        print(f"  Volatility (Annual):   {risk.volatility:.2f}%")
        print(f"  VaR 95%:               {risk.var_95:.2f}%")
        print(f"  Expected Shortfall:    {risk.expected_shortfall:.2f}%")
        print(f"  Sortino Ratio:         {risk.sortino_ratio:.2f}")
        print(f"  Calmar Ratio:          {risk.calmar_ratio:.2f}")

    def _print_trade_statistics(self):
        print("\n" + "-" * 80)
        print("TRADE STATISTICS")
        print("-" * 80)

        perf = self.performance
        print(f"\n  Closed Trades:         {perf.total_trades}")
        print(f"  Winning Trades:        {perf.winning_trades} ({perf.win_rate:.1f}%)")
        print(f"  Losing Trades:         {perf.losing_trades}")
        print(f"\n  Average Win:           ${perf.average_win:,.2f}")
        print(f"  Average Loss:          ${perf.average_loss:,.2f}")
        print(f"  Largest Win:           ${perf.largest_win:,.2f}")
        print(f"  Largest Loss:          ${perf.largest_loss:,.2f}")
        print(f"  Profit Factor:         {_fmt_ratio(perf.profit_factor)}")
        print(f"  Longest Streaks:       {perf.consecutive_wins} wins / {perf.consecutive_losses} losses")

    def monthly_returns(self) -> pd.Series:
        """Compounded equity return per calendar month, in percent."""
        if len(self.result.equity_curve) < 2:
            return pd.Series(dtype=float)

        equity = pd.Series(
            [float(p["equity"]) for p in self.result.equity_curve],
            index=pd.to_datetime([p["timestamp"] for p in self.result.equity_curve]),
        )
        month_end = equity.groupby(equity.index.to_period("M")).last()
        return month_end.pct_change().fillna(month_end.iloc[0] / equity.iloc[0] - 1) * 100

    def _print_monthly_returns(self):
        print("\n" + "-" * 80)
        print("MONTHLY RETURNS (%)")
        print("-" * 80)

        monthly = self.monthly_returns()
        if monthly.empty:
            print("\n  No monthly data available")
            return

        for period, value in monthly.items():
            print(f"  {period}   {value:+7.2f}")

        print(f"\n  Best Month:  {monthly.idxmax()} ({monthly.max():+.2f}%)")
        print(f"  Worst Month: {monthly.idxmin()} ({monthly.min():+.2f}%)")

    def _print_conclusion(self):
        print("\n" + "=" * 80)
        print("CONCLUSION")
        print("=" * 80)

        perf = self.performance
        checks = [
            perf.total_return > 0,
            perf.max_drawdown < 25,
            perf.sharpe_ratio > 1.0,
            perf.profit_factor > 1.5,
        ]
        score = sum(checks)
        print(f"\n  Overall Score: {score}/4")

        if score == 4:
            print("\n  VERDICT: EXCELLENT")
        elif score >= 3:
            print("\n  VERDICT: GOOD")
        elif score >= 2:
            print("\n  VERDICT: MARGINAL")
        else:
            print("\n  VERDICT: POOR")

        print("\n" + "=" * 80 + "\n")

    def get_summary_dict(self) -> Dict:
        """Get summary as dictionary for further processing."""
        params = self.result.params
        return {
            "id": self.result.id,
            "strategy_id": self.result.strategy_id,
            "status": self.result.status.value,
            "start_date": params.start_date.isoformat(),
            "end_date": params.end_date.isoformat(),
            "initial_capital": float(self.result.initial_capital),
            "final_capital": float(self.result.final_capital or 0),
            "total_return_pct": self.performance.total_return,
            "annualized_return": self.performance.annualized_return,
            "max_drawdown_pct": self.performance.max_drawdown,
            "sharpe_ratio": self.performance.sharpe_ratio,
            "total_trades": self.performance.total_trades,
            "win_rate_pct": self.performance.win_rate,
        }
