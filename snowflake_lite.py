from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from ipaddress import ip_address
from threading import Lock
from time import time
from typing import Callable, Iterable, Optional, Tuple

__author__ = ['j4hangir', 'vd2org']
__all__ = [
    'Layout', 'DEFAULT_LAYOUT', 'TWITTER_EPOCH',
    'Snowflake', 'SnowflakeGenerator',
    'SnowflakeError', 'ConfigError', 'TimestampRangeError', 'FieldOverflowError',
    'encode', 'decode', 'time_ms', 'host_identity',
]

logger = logging.getLogger(__name__)

TWITTER_EPOCH = 1288834974657
ID_BITS = 63  # the sign bit stays clear

Fields = Tuple[int, int, int, int]


class SnowflakeError(Exception):
    pass


class ConfigError(SnowflakeError, ValueError):
    pass


class TimestampRangeError(SnowflakeError, OverflowError):
    pass


class FieldOverflowError(SnowflakeError, OverflowError):
    pass


def time_ms() -> int:
    return int(time() * 1000)


@dataclass(frozen=True)
class Layout:
    epoch: int = TWITTER_EPOCH
    timestamp_bits: int = 41
    datacenter_bits: int = 5
    worker_bits: int = 5
    sequence_bits: int = 12

    def __post_init__(self):
        if self.epoch < 0:
            raise ConfigError("Epoch must not be negative.")
        widths = (self.timestamp_bits, self.datacenter_bits, self.worker_bits, self.sequence_bits)
        if any(w <= 0 for w in widths):
            raise ConfigError(f"Field widths must be positive, got {widths}.")
        if sum(widths) != ID_BITS:
            raise ConfigError(f"Field widths must add up to {ID_BITS} bits, got {sum(widths)}.")

    @property
    def max_timestamp(self) -> int:
        return (1 << self.timestamp_bits) - 1

    @property
    def max_datacenter(self) -> int:
        return (1 << self.datacenter_bits) - 1

    @property
    def max_worker(self) -> int:
        return (1 << self.worker_bits) - 1

    @property
    def max_sequence(self) -> int:
        return (1 << self.sequence_bits) - 1

    @property
    def worker_shift(self) -> int:
        return self.sequence_bits

    @property
    def datacenter_shift(self) -> int:
        return self.sequence_bits + self.worker_bits

    @property
    def timestamp_shift(self) -> int:
        return self.sequence_bits + self.worker_bits + self.datacenter_bits

    def encode(self, timestamp: int, datacenter: int, worker: int, seq: int) -> int:
        for name, value, bound in (('timestamp', timestamp, self.max_timestamp),
                                   ('datacenter', datacenter, self.max_datacenter),
                                   ('worker', worker, self.max_worker),
                                   ('sequence', seq, self.max_sequence)):
            if not 0 <= value <= bound:
                raise FieldOverflowError(f"{name.capitalize()} {value} does not fit in 0-{bound}.")

        value = ((timestamp << self.timestamp_shift)
                 | (datacenter << self.datacenter_shift)
                 | (worker << self.worker_shift)
                 | seq)
        if value.bit_length() > ID_BITS:
            raise FieldOverflowError(f"Assembled id {value} is wider than {ID_BITS} bits.")
        return value

    def decode(self, snowflake: int) -> Fields:
        if snowflake < 0 or snowflake.bit_length() > ID_BITS:
            raise FieldOverflowError(f"{snowflake} is not a valid {ID_BITS}-bit id.")
        return (
            snowflake >> self.timestamp_shift,
            (snowflake >> self.datacenter_shift) & self.max_datacenter,
            (snowflake >> self.worker_shift) & self.max_worker,
            snowflake & self.max_sequence,
        )


DEFAULT_LAYOUT = Layout()


def encode(timestamp: int, datacenter: int, worker: int, seq: int, layout: Layout = DEFAULT_LAYOUT) -> int:
    """Pack epoch-relative ``timestamp`` and the node fields into an id."""
    return layout.encode(timestamp, datacenter, worker, seq)


def decode(snowflake: int, layout: Layout = DEFAULT_LAYOUT) -> Fields:
    """Return ``(timestamp, datacenter, worker, seq)`` for ``snowflake``."""
    return layout.decode(snowflake)


@dataclass(frozen=True)
class Snowflake:
    timestamp: int
    datacenter: int
    worker: int
    seq: int = 0
    layout: Layout = field(default=DEFAULT_LAYOUT, repr=False)

    def __post_init__(self):
        # Raises FieldOverflowError on any out-of-range field.
        self.layout.encode(self.timestamp, self.datacenter, self.worker, self.seq)

    @classmethod
    def parse(cls, snowflake: int, layout: Layout = DEFAULT_LAYOUT) -> Snowflake:
        timestamp, datacenter, worker, seq = layout.decode(snowflake)
        return cls(timestamp=timestamp, datacenter=datacenter, worker=worker, seq=seq, layout=layout)

    @property
    def value(self) -> int:
        return self.layout.encode(self.timestamp, self.datacenter, self.worker, self.seq)

    @property
    def epoch(self) -> int:
        return self.layout.epoch

    @property
    def milliseconds(self) -> int:
        return self.timestamp + self.epoch

    @property
    def seconds(self) -> float:
        return self.milliseconds / 1000

    @property
    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.seconds, tz=timezone.utc)

    def datetime_tz(self, tz: tzinfo = None) -> datetime:
        return datetime.fromtimestamp(self.seconds, tz=tz)

    @property
    def timedelta(self) -> timedelta:
        """Time elapsed between the layout epoch and this id."""
        return timedelta(milliseconds=self.timestamp)

    def __int__(self) -> int:
        return self.value


def host_identity(addresses: Optional[Iterable[str]] = None, layout: Layout = DEFAULT_LAYOUT) -> Tuple[int, int]:
    """(datacenter, worker) from the highest first and last bytes of the host's IPv4 and IPv6 addresses."""
    if addresses is None:
        try:
            infos = socket.getaddrinfo(socket.gethostname(), None)
        except OSError as e:
            raise ConfigError(f"Unable to resolve host addresses: {e}") from e
        addresses = {info[4][0] for info in infos if info[0] in (socket.AF_INET, socket.AF_INET6)}

    packed = [ip_address(a.split('%')[0]).packed for a in addresses]
    if not packed:
        raise ConfigError("No host addresses to derive an identity from.")

    datacenter = max(p[0] for p in packed) % (layout.max_datacenter + 1)
    worker = max(p[-1] for p in packed) % (layout.max_worker + 1)
    return datacenter, worker


class SnowflakeGenerator:
    def __init__(self, worker_id: int, datacenter_id: int, seq: int = 0, *,
                 layout: Layout = DEFAULT_LAYOUT,
                 clock: Callable[[], int] = time_ms,
                 last_timestamp: Optional[int] = None):
        if worker_id < 0 or worker_id > layout.max_worker:
            raise ConfigError(f"Worker ID must be between 0 and {layout.max_worker}.")
        if datacenter_id < 0 or datacenter_id > layout.max_datacenter:
            raise ConfigError(f"Datacenter ID must be between 0 and {layout.max_datacenter}.")

        self._layout = layout
        self._clock = clock
        self._worker = worker_id
        self._datacenter = datacenter_id
        self._seq = seq
        self._last = last_timestamp
        self._behind = False
        self._lock = Lock()

        logger.debug("Snowflake generator ready: datacenter=%d worker=%d", datacenter_id, worker_id)

    @classmethod
    def from_host(cls, seq: int = 0, *, identity: Callable[[], Tuple[int, int]] = None,
                  layout: Layout = DEFAULT_LAYOUT, **kwargs) -> SnowflakeGenerator:
        if identity is None:
            datacenter, worker = host_identity(layout=layout)
        else:
            datacenter, worker = identity()
        return cls(worker, datacenter, seq, layout=layout, **kwargs)

    @classmethod
    def from_snowflake(cls, sf: Snowflake, **kwargs) -> SnowflakeGenerator:
        return cls(sf.worker, sf.datacenter, sf.seq, layout=sf.layout,
                   last_timestamp=sf.milliseconds, **kwargs)

    @property
    def worker_id(self) -> int:
        return self._worker

    @property
    def datacenter_id(self) -> int:
        return self._datacenter

    @property
    def layout(self) -> Layout:
        return self._layout

    @property
    def sequence(self) -> int:
        return self._seq

    @property
    def last_timestamp(self) -> Optional[int]:
        return self._last

    def _wait_past(self, last: int) -> int:
        logger.debug("Sequence exhausted at %d, waiting for the next millisecond", last)
        current = self._clock()
        while current <= last:
            current = self._clock()
        return current

    def next_id(self) -> int:
        layout = self._layout
        with self._lock:
            current = self._clock()
            last = self._last

            behind = last is not None and current < last
            if behind:
                current = last

            if current != last:
                seq = 0
            else:
                seq = (self._seq + 1) & layout.max_sequence
                if seq == 0:
                    current = self._wait_past(last)

            # A reading outside the field must not become the new baseline.
            timestamp = current - layout.epoch
            if not 0 <= timestamp <= layout.max_timestamp:
                raise TimestampRangeError(
                    f"Clock at {current} ms is outside the range of epoch {layout.epoch}.")

            if behind and not self._behind:
                logger.warning("Clock moved backwards, holding at %d", last)
            self._behind = behind
            self._last = current
            self._seq = seq

        return layout.encode(timestamp, self._datacenter, self._worker, seq)

    def __iter__(self) -> SnowflakeGenerator:
        return self

    def __next__(self) -> int:
        return self.next_id()


if __name__ == '__main__':
    gen = SnowflakeGenerator.from_host()
    print(next(gen))
