"""
Flat CSV export of harvested streams.

Each file starts with a ``key,value`` block of instrument metadata, then a
blank line, then the points of the stream as a pandas-written table in
chronological order.
"""

import io
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pandas as pd

from .config import ExportConfig
from .exceptions import ExportError
from .logger import LogEvent, get_logger, log_system_event
from .models import point_columns
from .streams import Stream, StreamRegistry

logger = get_logger(__name__)


def stream_metadata(stream: Stream) -> Dict[str, Any]:
    meta = stream.instrument.metadata()
    meta["request_id"] = stream.req_id
    meta["resolution"] = stream.resolution or "live"
    meta["status"] = stream.status.value
    return meta


def stream_frame(stream: Stream) -> pd.DataFrame:
    df = pd.DataFrame(
        [point.as_row() for point in stream.points],
        columns=point_columns(stream.kind),
    )
    if not df.empty:
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        df = df.sort_values("timestamp", kind="stable")
    return df


def export_filename(stream: Stream) -> str:
    instrument = stream.instrument
    parts = [instrument.symbol, instrument.kind.value]
    if instrument.expiry:
        parts.append(instrument.expiry)
    if instrument.right:
        parts.append(f"{instrument.strike:g}{instrument.right}")
    parts.append(stream.resolution or "live")
    parts.append(str(stream.req_id))
    return "_".join(parts) + ".csv"


def write_stream(stream: Stream, directory: Path) -> Path:
    path = directory / export_filename(stream)
    with open(path, "w", newline="") as f:
        for key, value in stream_metadata(stream).items():
            f.write(f"{key},{value}\n")
        f.write("\n")
        stream_frame(stream).to_csv(f, index=False, date_format="%Y-%m-%dT%H:%M:%S%z")
    return path


def read_export(path: Path) -> Tuple[Dict[str, str], pd.DataFrame]:
    """Load a file written by :func:`write_stream`."""
    text = Path(path).read_text()
    header, _, body = text.partition("\n\n")
    meta = {}
    for line in header.splitlines():
        key, _, value = line.partition(",")
        meta[key] = value
    df = pd.read_csv(io.StringIO(body))
    if "timestamp" in df.columns:
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return meta, df


class StreamExporter:
    """Writes every stream with enough points to the export directory."""

    def __init__(self, config: ExportConfig):
        self.config = config
        self.directory = Path(config.directory)

    def export_all(self, registry: StreamRegistry) -> List[Path]:
        """
        Export all streams, terminated or not.

        Raises:
            ExportError: the export directory cannot be created
        """
        if not self.config.enabled:
            return []

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExportError(f"Cannot create export directory {self.directory}: {e}")

        written: List[Path] = []
        skipped = 0
        for stream in registry:
            if len(stream.points) < self.config.min_points:
                skipped += 1
                continue
            try:
                path = write_stream(stream, self.directory)
            except OSError as e:
                logger.error(f"Failed to export {stream.label()}: {e}")
                continue
            written.append(path)
            logger.debug(LogEvent.STREAM_EXPORTED.value, stream=stream.label(), path=str(path))

        log_system_event(
            logger,
            LogEvent.EXPORT_COMPLETE,
            f"Exported {len(written)} streams to {self.directory}",
            written=len(written),
            skipped=skipped,
        )
        return written
