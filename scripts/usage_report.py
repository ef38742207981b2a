#!/usr/bin/env python3
"""
Discovery usage report for operators.

Run: python scripts/usage_report.py [--date 2026-01-31] [--json] [--reset-circuit]

Prints the platform's daily token and cost usage, the per-company breakdown,
the current hour's usage and the sweep circuit breaker state.

Exit codes:
  0 - Under the alert threshold and circuit closed
  1 - Alert threshold reached or circuit not closed
  2 - Report failed (store connection error)
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.services.store import get_store  # noqa: E402
from app.services.token_safety import (  # noqa: E402
    DailyUsageLedger,
    TokenSafetyConfig,
    get_sweep_circuit_breaker,
)


def format_report(daily: dict, hourly: dict, breaker: dict, config: TokenSafetyConfig) -> str:
    """
    Format usage as human-readable text

    Args:
        daily: DailyUsageRecord dump
        hourly: HourlyUsageRecord dump
        breaker: SweepCircuitBreaker.get_status()
        config: Limits to report against

    Returns:
        Formatted report string
    """
    lines = []
    lines.append("=" * 80)
    lines.append(f"LEAD DISCOVERY USAGE REPORT - {daily['date']}")
    lines.append("=" * 80)
    lines.append("")

    lines.append("PLATFORM")
    lines.append("-" * 80)
    lines.append(f"Total Tokens:              {daily['total_tokens']:,}")
    lines.append(
        f"Total Cost:                ${daily['total_cost_usd']:.4f} "
        f"(alert ${config.alert_threshold_usd:.2f}, limit ${config.max_daily_cost_usd:.2f})"
    )
    lines.append(f"Sweeps:                    {daily['sweep_count']} ({daily['failed_sweep_count']} failed)")
    lines.append(
        f"Tokens This Hour:          {hourly['total_tokens']:,} / {config.max_tokens_per_hour:,} "
        f"({hourly['hour']})"
    )
    lines.append("")

    lines.append("BY COMPANY")
    lines.append("-" * 80)
    by_company = daily["by_company"]
    if not by_company:
        lines.append("No sweeps recorded.")
    else:
        ranked = sorted(by_company.items(), key=lambda item: item[1]["tokens"], reverse=True)
        for company_id, usage in ranked:
            lines.append(
                f"  {company_id:<30} sweeps {usage['sweeps']}/{config.max_sweeps_per_company_per_day}"
                f"  failed {usage['failed_sweeps']}"
                f"  tokens {usage['tokens']:,}/{config.max_tokens_per_company_per_day:,}"
                f"  ${usage['cost_usd']:.4f}"
            )
    lines.append("")

    lines.append("SWEEP CIRCUIT BREAKER")
    lines.append("-" * 80)
    lines.append(f"State:                     {breaker['state'].upper()}")
    lines.append(f"Consecutive Failures:      {breaker['failures']} / {breaker['fail_max']}")
    lines.append(f"Cooldown:                  {breaker['cooldown_seconds']} seconds")
    lines.append("")
    lines.append("=" * 80)

    return "\n".join(lines)


def main():
    """Usage report entry point"""
    parser = argparse.ArgumentParser(description="Report lead discovery token and cost usage")
    parser.add_argument("--date", help="UTC date as YYYY-MM-DD (default: today)")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")
    parser.add_argument("--reset-circuit", action="store_true", help="Close the sweep circuit breaker first")
    args = parser.parse_args()

    try:
        ledger = DailyUsageLedger(get_store())
        daily = ledger.get_daily_usage(args.date).model_dump()
        hourly = ledger.get_hourly_usage().model_dump()
    except Exception as e:
        print(f"ERROR: Failed to read usage: {e}")
        sys.exit(2)

    breaker = get_sweep_circuit_breaker()
    if args.reset_circuit:
        breaker.reset()
    status = breaker.get_status()
    config = TokenSafetyConfig.from_settings()

    if args.json:
        print(json.dumps({"daily": daily, "hourly": hourly, "circuit_breaker": status}, indent=2))
    else:
        print(format_report(daily, hourly, status, config))

    attention = daily["total_cost_usd"] >= config.alert_threshold_usd or status["state"] != "closed"
    sys.exit(1 if attention else 0)


if __name__ == "__main__":
    main()
