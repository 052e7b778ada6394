"""Main CLI entry point."""

import argparse
import json
import logging
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

from pipeline_insights.errors import PipelineInsightsError


def main(argv: Optional[list[str]] = None) -> None:
    """Parse args and dispatch to subcommands."""
    parser = argparse.ArgumentParser(
        prog="pipeline-insights",
        description="Snapshot-based pipeline analytics and campaign attribution",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: from config, WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # ingest
    ingest_parser = subparsers.add_parser("ingest", help="Load one snapshot file into the store")
    _add_store_args(ingest_parser)
    ingest_parser.add_argument("input", type=Path, help="CSV, JSON or YAML file of records")
    ingest_parser.add_argument(
        "--snapshot-date",
        type=str,
        required=True,
        help="Date the export was taken (YYYY-MM-DD)",
    )
    ingest_parser.add_argument(
        "--filename",
        type=str,
        default=None,
        help="Batch label (default: input file name)",
    )

    # store
    store_parser = subparsers.add_parser("store", help="Inspect or maintain the snapshot store")
    _add_store_args(store_parser)
    store_parser.add_argument(
        "action",
        choices=["list", "count", "batches", "clear", "delete-batch"],
        help="List opportunities, count them, list batches, clear all data or delete one batch",
    )
    store_parser.add_argument("--batch-id", type=int, default=None, help="Batch to delete")
    store_parser.add_argument("--yes", action="store_true", help="Confirm clear")

    # metrics
    metrics_parser = subparsers.add_parser("metrics", help="Pipeline, rates and distributions for a period")
    _add_store_args(metrics_parser)
    _add_period_args(metrics_parser)
    _add_filter_args(metrics_parser)
    metrics_parser.add_argument("--as-of", type=str, default=None, help="Snapshot anchor (default: latest)")
    metrics_parser.add_argument(
        "--extra",
        action="store_true",
        help="Include fiscal-period pipeline, slippage, stage timing and closing probability",
    )

    for name, help_text in (("win-rate", "Win rate with supporting deals"), ("close-rate", "Close rate with supporting deals")):
        rate_parser = subparsers.add_parser(name, help=help_text)
        _add_store_args(rate_parser)
        _add_period_args(rate_parser)
        _add_filter_args(rate_parser)

    # movements
    movements_parser = subparsers.add_parser("movements", help="Stage movements in a period")
    _add_store_args(movements_parser)
    _add_period_args(movements_parser)
    movements_parser.add_argument("--flows", action="store_true", help="Aggregate into from/to flows")

    # duplicates
    duplicates_parser = subparsers.add_parser("duplicates", help="Possible duplicate opportunities")
    _add_store_args(duplicates_parser)

    # campaign
    campaign_parser = subparsers.add_parser("campaign", help="Manage campaigns and attribution")
    _add_store_args(campaign_parser)
    campaign_parser.add_argument(
        "action",
        choices=["create", "list", "associate", "remove", "import", "analytics", "walk"],
    )
    campaign_parser.add_argument("--campaign-id", type=int, default=None)
    campaign_parser.add_argument("--name", type=str, default=None)
    campaign_parser.add_argument("--type", dest="campaign_type", type=str, default=None)
    campaign_parser.add_argument("--start-date", type=str, default=None, help="YYYY-MM-DD")
    campaign_parser.add_argument("--cost", type=float, default=None)
    campaign_parser.add_argument("--opportunity-id", type=str, default=None)
    campaign_parser.add_argument("--requested-date", type=str, default=None, help="Baseline date (default: campaign start)")
    campaign_parser.add_argument("--attendees", type=int, default=None)
    campaign_parser.add_argument("--names-file", type=Path, default=None, help="One customer name per line")

    # rollup
    rollup_parser = subparsers.add_parser("rollup", help="Deduplicated totals for a campaign type")
    _add_store_args(rollup_parser)
    rollup_parser.add_argument("--type", dest="campaign_type", type=str, required=True)
    rollup_parser.add_argument("--fiscal-year", type=int, required=True, help="Fiscal year by start year, e.g. 2025")

    args = parser.parse_args(argv)
    settings = _load_settings(args)
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    handlers = {
        "ingest": _run_ingest,
        "store": _run_store,
        "metrics": _run_metrics,
        "win-rate": _run_rate,
        "close-rate": _run_rate,
        "movements": _run_movements,
        "duplicates": _run_duplicates,
        "campaign": _run_campaign,
        "rollup": _run_rollup,
    }
    try:
        handlers[args.command](args, settings)
    except PipelineInsightsError as e:
        raise SystemExit(str(e))


def _add_store_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to SQLite database (default: from config, pipeline_insights.db)",
    )
    parser.add_argument("--config", type=Path, default=None, help="Settings YAML")
    parser.add_argument("--output", type=Path, default=None, help="Write JSON to file (default: stdout)")


def _add_period_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--period",
        type=str,
        default="fy-to-date",
        help="last-N-months, month-to-date, fq-to-date, fy-to-date, last-fq, last-fy, fy-YYYY or custom",
    )
    parser.add_argument("--start", type=str, default=None, help="Custom period start (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, default=None, help="Custom period end, exclusive (YYYY-MM-DD)")


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--owner", action="append", default=[], help="Owner (repeatable)")
    parser.add_argument("--stage", action="append", default=[], help="Stage (repeatable)")
    parser.add_argument("--client", action="append", default=[], help="Client (repeatable)")
    parser.add_argument("--min-value", type=float, default=None)
    parser.add_argument("--max-value", type=float, default=None)
    parser.add_argument("--search", type=str, default=None)


def _load_settings(args: argparse.Namespace):
    from pipeline_insights.models.settings import AnalyticsSettings

    config = getattr(args, "config", None)
    settings = AnalyticsSettings.from_yaml(config) if config else AnalyticsSettings()
    if getattr(args, "db", None) is not None:
        settings = settings.model_copy(update={"db_path": args.db})
    return settings


def _parse_date(value: Optional[str], flag: str) -> Optional[date]:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise SystemExit(f"Invalid {flag} format. Use YYYY-MM-DD.")


def _filters(args: argparse.Namespace):
    from pipeline_insights.filtering import MetricsFilters

    return MetricsFilters(
        owners=args.owner,
        stages=args.stage,
        clients=args.client,
        min_value=args.min_value,
        max_value=args.max_value,
        search=args.search,
    )


def _emit(data: Any, output: Optional[Path]) -> None:
    if isinstance(data, list):
        data = [d.model_dump(mode="json") if hasattr(d, "model_dump") else d for d in data]
    elif hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    text = json.dumps(data, indent=2, default=str)
    if output:
        output.write_text(text, encoding="utf-8")
        print(f"Wrote {output}", file=sys.stderr)
    else:
        print(text)


def _service(settings):
    from pipeline_insights.service import AnalyticsService
    from pipeline_insights.store import SQLiteSnapshotStore

    return AnalyticsService(SQLiteSnapshotStore(settings.db_path), settings)


def _run_ingest(args: argparse.Namespace, settings) -> None:
    """Run ingest command."""
    from pipeline_insights.ingest import ingest_batch, load_records
    from pipeline_insights.store import SQLiteSnapshotStore

    snapshot_date = _parse_date(args.snapshot_date, "--snapshot-date")
    records = load_records(args.input)
    store = SQLiteSnapshotStore(settings.db_path)
    report = ingest_batch(store, records, snapshot_date=snapshot_date, filename=args.filename or args.input.name)
    print(
        f"Batch {report.batch_id}: {report.records_loaded} loaded, {report.records_failed} failed, "
        f"{report.opportunities_created} new, {report.opportunities_upgraded} upgraded",
        file=sys.stderr,
    )
    _emit(report, args.output)


def _run_store(args: argparse.Namespace, settings) -> None:
    """Run store command."""
    from pipeline_insights.store import SQLiteSnapshotStore

    store = SQLiteSnapshotStore(settings.db_path)
    if args.action == "list":
        _emit(store.list_opportunities(), args.output)
    elif args.action == "count":
        print(len(store.list_opportunities()))
    elif args.action == "batches":
        _emit([vars(b) for b in store.list_batches()], args.output)
    elif args.action == "clear":
        if not args.yes:
            raise SystemExit("store clear deletes every opportunity, snapshot and campaign; pass --yes")
        store.clear_all()
        print("Cleared all data")
    elif args.action == "delete-batch":
        if args.batch_id is None:
            raise SystemExit("store delete-batch requires --batch-id")
        removed = store.delete_batch(args.batch_id)
        print(f"Deleted batch {args.batch_id} ({removed} snapshots)")


def _run_metrics(args: argparse.Namespace, settings) -> None:
    """Run metrics command."""
    service = _service(settings)
    start, end = _parse_date(args.start, "--start"), _parse_date(args.end, "--end")
    result = service.compute_metrics(
        args.period,
        _filters(args),
        as_of=_parse_date(args.as_of, "--as-of"),
        start=start,
        end=end,
        extra=args.extra,
    )
    _emit(result, args.output)


def _run_rate(args: argparse.Namespace, settings) -> None:
    """Run win-rate / close-rate command."""
    service = _service(settings)
    compute = service.compute_win_rate if args.command == "win-rate" else service.compute_close_rate
    result = compute(
        args.period,
        _filters(args),
        start=_parse_date(args.start, "--start"),
        end=_parse_date(args.end, "--end"),
    )
    _emit(result, args.output)


def _run_movements(args: argparse.Namespace, settings) -> None:
    """Run movements command."""
    from pipeline_insights.analytics.movements import flow_summary, new_deal_count

    movements = _service(settings).compute_movements(
        args.period,
        start=_parse_date(args.start, "--start"),
        end=_parse_date(args.end, "--end"),
    )
    if args.flows:
        _emit(
            {
                "new_deals": new_deal_count(movements),
                "flows": [f.model_dump(mode="json") for f in flow_summary(movements, settings.stage_order)],
            },
            args.output,
        )
    else:
        _emit(movements, args.output)


def _run_duplicates(args: argparse.Namespace, settings) -> None:
    """Run duplicates command."""
    service = _service(settings)
    _emit(service.metrics_engine(service.load()).duplicate_detection(), args.output)


def _run_campaign(args: argparse.Namespace, settings) -> None:
    """Run campaign command."""
    from pipeline_insights.attribution import associate_customer, bulk_associate
    from pipeline_insights.identity import canonical_id
    from pipeline_insights.models.campaign import Campaign

    service = _service(settings)
    store = service.store

    if args.action == "create":
        if not args.name or not args.campaign_type or not args.start_date:
            raise SystemExit("campaign create requires --name, --type and --start-date")
        campaign = store.create_campaign(
            Campaign(
                name=args.name,
                type=args.campaign_type,
                start_date=_parse_date(args.start_date, "--start-date"),
                cost=args.cost,
            )
        )
        _emit(campaign, args.output)
        return
    if args.action == "list":
        _emit(store.list_campaigns(), args.output)
        return

    if args.campaign_id is None:
        raise SystemExit(f"campaign {args.action} requires --campaign-id")

    if args.action == "associate":
        if not args.opportunity_id:
            raise SystemExit("campaign associate requires --opportunity-id")
        customer = associate_customer(
            store,
            args.campaign_id,
            args.opportunity_id,
            requested_date=_parse_date(args.requested_date, "--requested-date"),
            attendees=args.attendees,
            settings=settings,
        )
        _emit(customer, args.output)
    elif args.action == "remove":
        if not args.opportunity_id:
            raise SystemExit("campaign remove requires --opportunity-id")
        removed = store.remove_campaign_customer(args.campaign_id, canonical_id(args.opportunity_id))
        print("Removed" if removed else "Not in campaign")
    elif args.action == "import":
        if args.names_file is None:
            raise SystemExit("campaign import requires --names-file")
        names = args.names_file.read_text(encoding="utf-8").splitlines()
        report = bulk_associate(
            store,
            args.campaign_id,
            names,
            requested_date=_parse_date(args.requested_date, "--requested-date"),
            settings=settings,
        )
        print(
            f"Imported {len(report.successful)}, {len(report.duplicates)} already in campaign, "
            f"{len(report.failed)} failed",
            file=sys.stderr,
        )
        _emit(report, args.output)
    elif args.action == "analytics":
        _emit(service.compute_campaign_analytics(args.campaign_id), args.output)
    elif args.action == "walk":
        _emit(service.compute_pipeline_walk(args.campaign_id), args.output)


def _run_rollup(args: argparse.Namespace, settings) -> None:
    """Run rollup command."""
    _emit(_service(settings).compute_campaign_type_rollup(args.campaign_type, args.fiscal_year), args.output)


if __name__ == "__main__":
    main()
