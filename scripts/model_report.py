"""Model catalog report CLI.

Usage:
    uv run python scripts/model_report.py                      # ASCII table
    uv run python scripts/model_report.py --provider anthropic
    uv run python scripts/model_report.py --suggest 6000 --budget low
    uv run python scripts/model_report.py --json               # JSON output
"""

from __future__ import annotations

import argparse
import json
import sys

from quizforge.config import get_settings
from quizforge.llm.catalog import BudgetTier, ModelCatalog, ModelDescriptor, load_catalog


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Model catalog report")
    parser.add_argument(
        "--provider",
        default=None,
        help="Only list models of this provider",
    )
    parser.add_argument(
        "--suggest",
        type=int,
        default=None,
        metavar="TOKENS",
        help="Suggest the cheapest model able to emit TOKENS output tokens",
    )
    parser.add_argument(
        "--budget",
        choices=[tier.value for tier in BudgetTier],
        default=None,
        help="Budget tier for --suggest",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="json_output",
        help="Output as JSON instead of ASCII table",
    )
    return parser.parse_args(argv)


def print_table(models: list[ModelDescriptor]) -> str:
    """Format models as ASCII table and return the string."""
    lines: list[str] = ["=== Models ==="]
    if not models:
        lines.append("  (no data)")
        return "\n".join(lines)

    header = (
        f"  {'Model':<30} {'Provider':<10} {'Context':>9} "
        f"{'Max out':>8} {'$/M in':>8} {'$/M out':>8}"
    )
    lines.append(header)
    lines.append("  " + "-" * (len(header) - 2))
    for m in models:
        lines.append(
            f"  {m.model_id:<30} {m.provider:<10} {m.context_window:>9} "
            f"{m.max_output_tokens:>8} {m.cost_per_million.input:>8.2f} "
            f"{m.cost_per_million.output:>8.2f}"
        )
    return "\n".join(lines)


def run(args: argparse.Namespace, catalog: ModelCatalog) -> str:
    """Produce the report text for parsed ``args``."""
    if args.suggest is not None:
        model = catalog.suggest_model(args.suggest, args.provider, args.budget)
        if args.json_output:
            return json.dumps(model.model_dump(mode="json"), indent=2)
        return print_table([model])

    models = catalog.all(args.provider)
    if args.json_output:
        return json.dumps([m.model_dump(mode="json") for m in models], indent=2)
    return print_table(models)


def main(argv: list[str] | None = None) -> None:
    """Run the model report CLI."""
    args = parse_args(argv)
    catalog = load_catalog(get_settings().model_catalog_path)
    try:
        print(run(args, catalog))
    except LookupError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
