"""estclient command line interface."""

from __future__ import annotations

import json
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from estclient.correlation.engine import CorrelationEngine
from estclient.correlation.models import LotResult
from estclient.errors import EstimatorClientError
from estclient.monitoring.metrics import render_metrics
from estclient.transport.base import RecordingTransport
from estclient.utils.config import load_client_config
from estclient.utils.logging import configure_logging, get_logger

configure_logging()
LOG = get_logger(__name__)

app = typer.Typer(add_completion=False)


def load_transcript(path: Path) -> List[Dict[str, Any]]:
    entries: List[Dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if line.strip():
                entries.append(json.loads(line))
    return entries


@app.command()
def config(config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config")) -> None:
    """Print the resolved client configuration."""
    cfg = load_client_config(config_path)
    typer.echo(yaml.safe_dump({"estclient": cfg.model_dump()}, sort_keys=False))


@app.command()
def replay(
    transcript: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSONL transcript"),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to YAML config"),
    strict: Optional[bool] = typer.Option(None, "--strict/--lenient", help="Reject duplicate pending keys"),
    show_metrics: bool = typer.Option(False, "--metrics", help="Print Prometheus metrics afterwards"),
) -> None:
    """Replay recorded submissions and estimator frames through a correlation engine.

    Each line holds one of ``{"send": {"objects": [...], "batched": true, "info": ...}}``,
    ``{"recv": <decoded message>}`` or ``{"frame": "<raw json text>"}``.
    """
    cfg = load_client_config(config_path)
    engine_cfg = cfg.engine
    if strict is not None:
        engine_cfg = engine_cfg.model_copy(update={"strict_keys": strict})
    transport = RecordingTransport()
    engine = CorrelationEngine.from_config(transport, engine_cfg)
    engine.mark_ready()

    def report(fut: Future[LotResult], lot_id: int) -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        result = fut.result()
        records = [record.model_dump(exclude_none=True) for record in result.records]
        typer.echo(f"lot {lot_id} completed info={json.dumps(result.info)} records={json.dumps(records)}")

    for lineno, entry in enumerate(load_transcript(transcript), start=1):
        if "send" in entry:
            request = entry["send"]
            try:
                handle = engine.submit(
                    request.get("objects", []),
                    info=request.get("info"),
                    batched=request.get("batched", True),
                )
            except EstimatorClientError as exc:
                typer.echo(f"line {lineno}: submission rejected: {exc}")
                continue
            handle.future.add_done_callback(lambda fut, lot_id=handle.lot_id: report(fut, lot_id))
        elif "recv" in entry:
            engine.on_delivery(entry["recv"])
        elif "frame" in entry:
            engine.on_frame(entry["frame"])
        else:
            typer.echo(f"line {lineno}: unrecognised entry")

    typer.echo(f"sent {len(transport.frames)} messages")
    pending = [lot.lot_id for lot in engine.registry.pending_lots()]
    LOG.info("Replayed transcript", extra={"transcript": str(transcript), "pending": len(pending)})
    typer.echo(f"pending lots: {pending}")
    engine.shutdown()
    if show_metrics:
        data, _ = render_metrics()
        typer.echo(data.decode())


if __name__ == "__main__":
    app()
