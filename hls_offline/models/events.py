"""
Events published to observers, and the reports a transport sends back while a
fetch is in flight.
"""

from dataclasses import dataclass, field

from .asset import DownloadState


@dataclass(frozen=True)
class ProgressChanged:
    asset_name: str
    percent: float
    url: str = ""


@dataclass(frozen=True)
class StateChanged:
    asset_name: str
    state: DownloadState


@dataclass(frozen=True)
class RestoreComplete:
    """Emitted once the manager has reconciled state left by a previous run."""


# Transport reports


@dataclass(frozen=True)
class BytesProgress:
    """Progress of a discrete-file transfer."""

    bytes_written: int
    bytes_expected: int


@dataclass(frozen=True)
class TimeRange:
    start: float
    duration: float


@dataclass(frozen=True)
class TimeRangeProgress:
    """Progress of a continuous-media transfer, as loaded time ranges."""

    loaded_ranges: tuple[TimeRange, ...] = field(default_factory=tuple)
    expected_duration: float = 0.0


@dataclass(frozen=True)
class MediaSelectionResolved:
    """The transfer engine settled on the alternate tracks available to it."""

    selection: object
