"""Durable RPS counter, one strictly increasing sequence per issuer scope.

The counter lives in ``<data>/sequence.json`` and every read-modify-write
holds an exclusive file lock, so separate processes sharing the data
directory never hand out the same number.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from emissor_abrasf import config as _config
from emissor_abrasf.services.exceptions import AllocationUnavailable

logger = logging.getLogger(__name__)


def _sequence_file() -> Path:
    return _config.get_data_dir() / "sequence.json"


@contextmanager
def _locked() -> Iterator[None]:
    """Hold an exclusive file lock during sequence read-modify-write.

    A lock timeout or an unreachable data directory surfaces as
    AllocationUnavailable.
    """
    sf = _sequence_file()
    try:
        sf.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(sf.with_suffix(".lock"), timeout=_config.STORE_LOCK_TIMEOUT)
        lock.acquire()
    except Timeout as exc:
        raise AllocationUnavailable(f"Contador RPS bloqueado: {exc}") from exc
    except OSError as exc:
        raise AllocationUnavailable(f"Contador RPS indisponível: {exc}") from exc
    try:
        yield
    finally:
        lock.release()


def _load() -> dict[str, int]:
    sf = _sequence_file()
    # A corrupt counter is never reset: that could reissue numbers.
    try:
        if not sf.exists():
            return {}
        data = json.loads(sf.read_text())
        if not isinstance(data, dict):
            raise ValueError(f"formato inesperado em {sf}")
        return {scope: int(value) for scope, value in data.items()}
    except (OSError, TypeError, ValueError) as exc:
        raise AllocationUnavailable(f"Contador RPS ilegível: {exc}") from exc


def _save(data: dict[str, int]) -> None:
    sf = _sequence_file()
    tmp = sf.with_suffix(".tmp")
    try:
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True))
        os.replace(tmp, sf)
    except OSError as exc:
        raise AllocationUnavailable(f"Contador RPS não gravado: {exc}") from exc


def current_rps(scope: str) -> int:
    """Return the last number allocated for *scope* (0 if none)."""
    with _locked():
        return _load().get(scope, 0)


def next_rps(scope: str) -> int:
    """Atomically allocate and return the next RPS number for *scope*."""
    with _locked():
        data = _load()
        data[scope] = data.get(scope, 0) + 1
        _save(data)
        logger.debug("RPS %d allocated for %s", data[scope], scope)
        return data[scope]


def peek_next_rps(scope: str) -> int:
    """Return the next sequence number without persisting it."""
    with _locked():
        return _load().get(scope, 0) + 1


def set_rps(scope: str, value: int) -> None:
    """Move the counter forward, e.g. to continue numbering from another system.

    Raises ValueError if *value* is below the current counter.
    """
    with _locked():
        data = _load()
        current = data.get(scope, 0)
        if value < current:
            raise ValueError(
                f"Contador de {scope} não pode retroceder ({current} -> {value})"
            )
        data[scope] = value
        _save(data)
