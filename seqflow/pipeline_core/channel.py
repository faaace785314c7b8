"""
Channel - typed conduits that carry items between task instances.

A channel is either a *value* channel, holding one item that every consumer
may read any number of times, or a *queue* channel, whose items are each
consumed exactly once. Channels know which producers feed them so that
``collect_all`` can gate aggregation steps until every upstream branch has
settled.
"""

import glob
import logging
import re
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .error_handling import ConfigurationError
from .meta import SampleMeta

logger = logging.getLogger(__name__)


class ChannelKind(str, Enum):
    """Lifecycle kind of a channel."""

    VALUE = "value"
    QUEUE = "queue"


@dataclass(frozen=True)
class ChannelItem:
    """One item flowing through a channel.

    Attributes
    ----------
    meta : SampleMeta or None
        Labels of the sample the item belongs to; None for shared items
    payload : Path or tuple of Path
        The file reference(s) carried by the item
    """

    meta: Optional[SampleMeta]
    payload: Any

    def files(self) -> List[Path]:
        """Return the payload flattened to a list of paths."""
        if isinstance(self.payload, (list, tuple)):
            return [Path(p) for p in self.payload]
        return [Path(self.payload)]


class QueueSubscription:
    """Single consumer view of a queue channel.

    Iterating drains the items emitted so far and stops; iterating again later
    yields whatever was emitted in the meantime. Each item is delivered once.
    """

    def __init__(self, channel: "Channel"):
        self._channel = channel

    def __iter__(self) -> Iterator[ChannelItem]:
        while self._channel._buffer:
            self._channel.consumed += 1
            yield self._channel._buffer.popleft()

    @property
    def exhausted(self) -> bool:
        """True once the channel is closed and every item has been delivered."""
        return self._channel.closed and not self._channel._buffer


class Channel:
    """Ordered conduit carrying :class:`ChannelItem` objects.

    Parameters
    ----------
    name : str
        Channel name used in logs and error messages
    kind : ChannelKind
        VALUE or QUEUE
    """

    def __init__(self, name: str, kind: ChannelKind = ChannelKind.QUEUE):
        self.name = name
        self.kind = ChannelKind(kind)
        self.produced = 0
        self.consumed = 0
        self._buffer: Deque[ChannelItem] = deque()
        self._value: Optional[ChannelItem] = None
        self._producers: Set[str] = set()
        self._settled: Set[str] = set()
        self._failed: Set[str] = set()
        self._closed = False
        self._subscribed = False
        self._collected = False

    # --- construction -------------------------------------------------------

    @classmethod
    def value(cls, name: str, payload: Any, meta: Optional[SampleMeta] = None) -> "Channel":
        """Create a closed value channel holding a single item."""
        channel = cls(name, ChannelKind.VALUE)
        channel.emit(ChannelItem(meta, payload))
        channel.close()
        return channel

    @classmethod
    def of(cls, name: str, items: Sequence[ChannelItem]) -> "Channel":
        """Create a closed queue channel from a fixed sequence of items."""
        channel = cls(name, ChannelKind.QUEUE)
        for item in items:
            channel.emit(item)
        channel.close()
        return channel

    def add_producer(self, producer: str) -> None:
        """Declare an upstream producer that will settle this channel."""
        if self._closed:
            raise RuntimeError(f"Cannot add producer '{producer}' to closed channel '{self.name}'")
        self._producers.add(producer)

    # --- producer side ------------------------------------------------------

    def emit(self, item: ChannelItem) -> None:
        """Append an item (queue) or bind the value (value channel)."""
        if self._closed:
            raise RuntimeError(f"Cannot emit to closed channel '{self.name}'")
        if not isinstance(item, ChannelItem):
            raise TypeError(f"Channels carry ChannelItem objects, got {type(item).__name__}")
        if self.kind is ChannelKind.VALUE:
            if self._value is not None and self._value != item:
                logger.debug(f"Value channel '{self.name}' rebound to {item.payload}")
            self._value = item
            self.produced = 1
        else:
            self._buffer.append(item)
            self.produced += 1

    def settle(self, producer: str, failed: bool = False) -> None:
        """Record that a producer will emit nothing more.

        The channel closes once every declared producer has settled. A producer
        settling with ``failed=True`` marks the channel as broken, which keeps
        ``collect_all`` from ever firing.
        """
        if producer not in self._producers:
            raise ValueError(f"'{producer}' is not a producer of channel '{self.name}'")
        self._settled.add(producer)
        if failed:
            self._failed.add(producer)
        if self._settled == self._producers:
            self._closed = True
            logger.debug(
                f"Channel '{self.name}' closed after {self.produced} item(s)"
                + (f" (failed upstream: {sorted(self._failed)})" if self._failed else "")
            )

    def close(self) -> None:
        """Close the channel regardless of declared producers."""
        self._settled = set(self._producers)
        self._closed = True

    @property
    def closed(self) -> bool:
        """True when no further items will be emitted."""
        return self._closed

    @property
    def failed(self) -> bool:
        """True when at least one producer settled after a failure."""
        return bool(self._failed)

    @property
    def producers(self) -> Set[str]:
        """Names of the declared producers."""
        return set(self._producers)

    # --- consumer side ------------------------------------------------------

    def subscribe(self):
        """Return a lazy finite view of the channel items.

        Value channels return a fresh iterator over their single item on every
        call. Queue channels return a single-pass :class:`QueueSubscription`;
        a second subscription is an error.
        """
        if self.kind is ChannelKind.VALUE:
            return iter([self._value] if self._value is not None else [])
        if self._subscribed:
            raise RuntimeError(f"Queue channel '{self.name}' already has a consumer")
        self._subscribed = True
        return QueueSubscription(self)

    def peek_value(self) -> Optional[ChannelItem]:
        """Return the bound value of a value channel without consuming it."""
        if self.kind is not ChannelKind.VALUE:
            raise RuntimeError(f"Channel '{self.name}' is not a value channel")
        return self._value

    def collect_all(self) -> Iterator[List[ChannelItem]]:
        """Yield one aggregated list of every item once all producers settled.

        Yields nothing while producers are outstanding, after an upstream
        failure, or when the items were already collected.
        """
        if not self._closed or self._failed or self._collected:
            return
        self._collected = True
        if self.kind is ChannelKind.VALUE:
            yield [self._value] if self._value is not None else []
            return
        items = list(self._buffer)
        self._buffer.clear()
        self.consumed += len(items)
        yield items

    @property
    def drained(self) -> bool:
        """True when every produced queue item has been consumed."""
        return self.kind is ChannelKind.VALUE or self.consumed == self.produced

    def __len__(self) -> int:
        if self.kind is ChannelKind.VALUE:
            return 0 if self._value is None else 1
        return len(self._buffer)

    def __repr__(self) -> str:
        """Return string representation of the channel."""
        state = "closed" if self._closed else "open"
        return (
            f"Channel(name='{self.name}', kind={self.kind.value}, {state}, "
            f"produced={self.produced}, consumed={self.consumed})"
        )


# --- file pair discovery ----------------------------------------------------


def _expand_braces(pattern: str) -> List[str]:
    """Expand the first ``{a,b}`` group recursively."""
    match = re.search(r"\{([^{}]*)\}", pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded = []
    for option in match.group(1).split(","):
        expanded.extend(_expand_braces(head + option + tail))
    return expanded


def _pattern_to_regex(pattern: str) -> "re.Pattern":
    """Translate a path glob into a regex capturing the text of each wildcard.

    ``*`` and ``?`` match within one path segment, ``**`` across segments;
    ``{a,b}`` alternatives and ``[...]`` classes are matched but not captured.
    """
    regex = ""
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**", i):
            regex += "(.*)"
            i += 1
        elif char == "*":
            regex += "([^/]*)"
        elif char == "?":
            regex += "([^/])"
        elif char == "{":
            end = pattern.index("}", i)
            options = pattern[i + 1 : end].split(",")
            regex += "(?:" + "|".join(re.escape(o) for o in options) + ")"
            i = end
        elif char == "[":
            end = pattern.index("]", i)
            regex += pattern[i : end + 1]
            i = end
        else:
            regex += re.escape(char)
        i += 1
    return re.compile(regex + r"\Z")


def _sample_key(captures: Sequence[str]) -> str:
    """Join the wildcard captures of one path, dropping empty and repeated parts."""
    parts: List[str] = []
    for capture in captures:
        capture = capture.strip("/")
        if capture and capture not in parts:
            parts.append(capture)
    return "_".join(parts)


def group_file_pairs(pattern: str, size: int = 2) -> Dict[str, Tuple[Path, ...]]:
    """Group files matching ``pattern`` by the text matched by its wildcards.

    The wildcards may sit in the file name (``data/*_{1,2}.fastq.gz``) or in a
    directory (``data/*/reads_{1,2}.fastq.gz``); the captured parts of one
    path, joined with ``_``, form the sample id.

    Parameters
    ----------
    pattern : str
        Glob pattern, optionally with ``{a,b}`` alternatives, e.g.
        ``data/*_{1,2}.fastq.gz``
    size : int
        Number of files expected per group; groups of another size are dropped

    Returns
    -------
    dict
        Sample id -> sorted tuple of file paths
    """
    path_regex = _pattern_to_regex(pattern)
    paths: Set[str] = set()
    for expanded in _expand_braces(pattern):
        paths.update(glob.glob(expanded, recursive=True))

    groups: Dict[str, List[Path]] = defaultdict(list)
    for path in sorted(paths):
        match = path_regex.match(path)
        if match is None:
            continue
        key = _sample_key(match.groups()) or Path(path).name
        groups[key].append(Path(path).resolve())

    result = {}
    for key, files in sorted(groups.items()):
        if len(files) != size:
            logger.warning(
                f"Skipping sample '{key}': expected {size} file(s) matching '{pattern}', "
                f"found {len(files)}"
            )
            continue
        result[key] = tuple(sorted(files))
    return result


def from_file_pairs(pattern: str, size: int = 2, name: str = "reads") -> Channel:
    """Create a closed queue channel with one item per discovered sample.

    Each item carries a :class:`SampleMeta` keyed by the shared sample id and
    the tuple of matching files as payload.

    Raises
    ------
    ConfigurationError
        If no complete group matches the pattern
    """
    if size < 1:
        raise ValueError(f"File group size must be at least 1, got {size}")
    groups = group_file_pairs(pattern, size=size)
    if not groups:
        raise ConfigurationError(
            f"No files match the input pattern '{pattern}' (expected groups of {size})", "input"
        )
    logger.info(f"Found {len(groups)} sample(s) matching '{pattern}'")
    items = [
        ChannelItem(SampleMeta(id=key, single_end=(size == 1)), files)
        for key, files in groups.items()
    ]
    return Channel.of(name, items)
