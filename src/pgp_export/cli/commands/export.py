"""Export commands for pgp-export."""

from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from pgp_export.config import load_job_file
from pgp_export.database import DataStore
from pgp_export.models.responses import ExportRequest, RecipientKeySource
from pgp_export.pipeline import ExportPipeline

from ..main import state
from ..output import print_dict, print_error, print_info, print_json, print_success

app = typer.Typer(help="Run encrypted exports")


def _parse_recipient(value: str) -> RecipientKeySource:
    """NAME=@stage/path/key.asc"""
    name, sep, path = value.partition("=")
    if not sep or not name or not path:
        raise typer.BadParameter(f"Expected NAME=STAGE_PATH, got {value!r}", param_hint="--recipient")
    return RecipientKeySource(name=name, path=path)


@app.command("run")
def run_export(
    source_table: Optional[str] = typer.Argument(None, help="Table to export ([db.][schema.]table)"),
    job: Optional[Path] = typer.Option(
        None, "--job", help="YAML job file (replaces the other options)"
    ),
    file_format: str = typer.Option("csv", "--format", "-f", help="csv or parquet"),
    staging: Optional[str] = typer.Option(None, "--staging", help="Staging stage, e.g. @staging/orders"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output stage, e.g. @outbound/orders"),
    recipient: Optional[list[str]] = typer.Option(
        None, "--recipient", "-r", help="Recipient key as NAME=STAGE_PATH (repeatable)"
    ),
    prefix: Optional[str] = typer.Option(None, "--prefix", "-p", help="File name prefix"),
    n_shards: Optional[int] = typer.Option(None, "--shards", "-n", help="Number of shards"),
    key_column: Optional[list[str]] = typer.Option(
        None, "--key-column", "-k", help="Fingerprint column (repeatable)"
    ),
    use_saved_key: bool = typer.Option(
        False, "--use-saved-key", help="Fingerprint on the latest saved key selection"
    ),
    delimiter: Optional[str] = typer.Option(None, "--delimiter", help="CSV delimiter"),
    header: bool = typer.Option(False, "--header", help="Write a CSV header row"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Concurrent shards"),
    armor: bool = typer.Option(False, "--armor", help="ASCII-armored output"),
) -> None:
    """Run a sharded export encrypted to every recipient.

    Either pass --job job.yaml or the table argument with --staging,
    --output, --recipient and --prefix.
    """
    try:
        if job:
            request = load_job_file(job)
        else:
            missing = [
                name
                for name, value in (
                    ("SOURCE_TABLE", source_table),
                    ("--staging", staging),
                    ("--output", output),
                    ("--recipient", recipient),
                    ("--prefix", prefix),
                )
                if not value
            ]
            if missing:
                print_error(f"Missing required options: {', '.join(missing)} (or use --job)")
                raise typer.Exit(1)

            request = ExportRequest(
                source_table=source_table,
                file_format=file_format,
                staging_stage=staging,
                output_stage=output,
                recipient_keys=[_parse_recipient(r) for r in recipient],
                file_prefix=prefix,
                n_shards=n_shards,
                key_columns=key_column or None,
                use_saved_key=use_saved_key,
                delimiter=delimiter,
                include_header=header,
                max_workers=workers,
                armor=armor or None,
            )
    except (ValidationError, ValueError, OSError) as e:
        print_error(f"Invalid export job: {e}")
        raise typer.Exit(1)

    with DataStore() as store:
        result = ExportPipeline(store).run(request)

    if state.json_output:
        print_json(result.to_dict())
    else:
        if state.verbose:
            for line in result.log:
                print_info(line)
        if result.succeeded:
            print_success(f"Export completed: {result.files_processed} file(s)")
            print_dict({
                "Process": result.process_name,
                "Total rows": result.total_rows,
                "Shards": result.n_shards,
                "Files": ", ".join(result.files),
                "Manifest": result.manifest,
                "Recipients": ", ".join(r.name for r in result.recipients),
            })
        else:
            print_error(f"Export failed in {result.phase}: {result.error.message}")

    if not result.succeeded:
        raise typer.Exit(1)
