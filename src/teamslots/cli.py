"""Rank meeting slots from an exported availability file.

Reads a JSON array of availability records (the ``monthlyAvailability``
form kept in the LocalStore, or a remote export), keeps the ones of the
requested scope and period, and prints the ranked slots or a per-day
heatmap.

Run with: teamslots rank data/local/monthlyAvailability.json --scope team-1 --period 2024-01
Hours:    teamslots rank records.json --scope team-1 --period 2024-01 --hours 9-17 --top 10
JSON:     teamslots rank records.json --scope team-1 --period 2024-01 --json
Heatmap:  teamslots heatmap records.json --scope team-1 --period 2024-01

Exit codes:
  0 = success (table or JSON on stdout)
  1 = error (message on stderr)
"""

import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

from teamslots.aggregation import aggregate, daily_heatmap, participation_summary
from teamslots.config import get_config
from teamslots.errors import TeamSlotsError, ValidationError
from teamslots.logging import get_logger, setup_logging_from_config
from teamslots.models import AggregationResult, AvailabilityRecord
from teamslots.slots import HOURS_PER_DAY, month_universe, parse_month

log = get_logger(__name__)


def _err(msg: str) -> None:
    """Write diagnostics to stderr so stdout stays clean for JSON."""
    print(msg, file=sys.stderr)


def parse_hours(value: str) -> range:
    """``"9-17"`` -> hours 9..16 (end exclusive); ``"all"`` -> 0..23."""
    if value == "all":
        return range(HOURS_PER_DAY)
    parts = value.split("-")
    if len(parts) != 2 or not all(p.strip().isdigit() for p in parts):
        raise ValidationError(f"Hours must look like START-END, got {value!r}", field="hours")
    start, end = int(parts[0]), int(parts[1])
    if not 0 <= start < end <= HOURS_PER_DAY:
        raise ValidationError(
            f"Hours must satisfy 0 <= START < END <= {HOURS_PER_DAY}, got {value!r}", field="hours"
        )
    return range(start, end)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="teamslots",
        description="Rank common meeting slots from availability records.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("records", type=str, help="JSON file holding an array of records.")
    common.add_argument("--scope", type=str, required=True, help="Scope (team) ID.")
    common.add_argument("--period", type=str, required=True, help="Month, YYYY-MM.")
    common.add_argument(
        "--hours",
        type=str,
        default="all",
        help="Hour window START-END in UTC, end exclusive (default: all 24 hours).",
    )
    common.add_argument(
        "--members",
        type=int,
        default=None,
        help="Team size, for the response rate (default: number of respondents).",
    )
    common.add_argument("--json", action="store_true", help="Print JSON instead of a table.")

    rank = sub.add_parser("rank", parents=[common], help="Print the ranked slot list.")
    rank.add_argument("--top", type=int, default=10, help="Number of slots to print (default: 10).")
    rank.add_argument(
        "--include-empty",
        action="store_true",
        help="Also list slots nobody is available for.",
    )

    sub.add_parser("heatmap", parents=[common], help="Print per-day availability counts.")
    return parser.parse_args(argv)


def load_records(path: Path, scope_id: str, period: str) -> list[AvailabilityRecord]:
    """Records of ``scope_id``/``period`` from a JSON array file.

    Raises:
        ValidationError: If the file is not a JSON array or a record is malformed.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except UnicodeDecodeError as e:
        raise ValidationError(f"{path} is not UTF-8 text: {e}", field="records") from e
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON: {e}", field="records") from e
    if not isinstance(raw, list):
        raise ValidationError(f"{path} must hold a JSON array of records", field="records")
    records = [AvailabilityRecord.from_json(item) for item in raw]
    selected = [r for r in records if r.scope_id == scope_id and r.period == period]
    log.debug("records_loaded", path=str(path), total=len(records), selected=len(selected))
    return selected


def _format_table(headers: list[str], rows: list[list[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    header_line = " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "-+-".join("-" * w for w in widths)
    row_lines = [" | ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)) for row in rows]
    return "\n".join([header_line, separator, *row_lines])


def format_ranking(result: AggregationResult, top: int, include_empty: bool = False) -> str:
    slots = result.ranked_slots[:top] if include_empty else result.best_slots(limit=top)
    if not slots:
        return "(no common availability)"
    rows = [
        [
            s.slot_key,
            f"{s.available_count}/{result.responded_count}",
            f"{s.score:.0%}",
            ", ".join(s.available_user_ids) or "-",
        ]
        for s in slots
    ]
    return _format_table(["Slot", "Available", "Score", "Who"], rows)


def _run(args: argparse.Namespace) -> int:
    parse_month(args.period)
    hours = parse_hours(args.hours)
    path = Path(args.records)
    if not path.is_file():
        raise ValidationError(f"Records file {path} does not exist", field="records")

    records = load_records(path, args.scope, args.period)
    result = aggregate(
        records,
        month_universe(args.period, hours),
        scope_id=args.scope,
        period=args.period,
        total_participants=args.members,
    )

    if args.command == "rank":
        if args.json:
            payload = participation_summary(result, top=args.top).model_dump(mode="json")
            payload["ranked_slots"] = [s.model_dump(mode="json") for s in result.best_slots(limit=args.top)]
            print(json.dumps(payload, indent=2))
        else:
            print(format_ranking(result, args.top, args.include_empty))
            _err(
                f"{result.responded_count}/{result.total_participants} responded "
                f"({result.response_rate:.0%})"
            )
        return 0

    heat = daily_heatmap(result)
    if args.json:
        print(json.dumps([day.model_dump(mode="json") for day in heat], indent=2))
    else:
        rows = [
            [
                day.date.isoformat(),
                str(day.max_count),
                str(day.total_count),
                day.best_slot or "-",
            ]
            for day in heat
        ]
        print(_format_table(["Date", "Peak", "Total", "Best slot"], rows))
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    setup_logging_from_config(get_config())
    try:
        return _run(args)
    except (TeamSlotsError, OSError) as e:
        _err(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
