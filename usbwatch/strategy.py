"""Detection substrate probing and strategy selection."""
from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

from usbwatch.errors import ProbeUnavailable
from usbwatch.parsers import normalize_platform

logger = logging.getLogger(__name__)


class DetectionStrategy(str, Enum):
    NATIVE_EVENT = "native-event"
    NATIVE_POLL = "native-poll"
    COMMAND_POLL = "command-poll"


PRIORITY = (
    DetectionStrategy.NATIVE_EVENT,
    DetectionStrategy.NATIVE_POLL,
    DetectionStrategy.COMMAND_POLL,
)


@dataclass(slots=True)
class SubstrateProbe:
    """Outcome of a capability check for one substrate."""

    available: bool
    reason: Optional[str] = None


@dataclass(slots=True)
class StrategySelection:
    strategy: DetectionStrategy
    availability: Dict[str, bool] = field(default_factory=dict)
    reasons: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "strategy": self.strategy.value,
            "availability": dict(self.availability),
            "reasons": dict(self.reasons),
        }


Probe = Callable[[], SubstrateProbe]


def probe_native_event(platform: Optional[str] = None) -> SubstrateProbe:
    """Check that pyudev can be imported and a udev context opened."""
    if normalize_platform(platform) != "linux":
        return SubstrateProbe(False, "udev monitoring is only available on Linux")
    try:
        pyudev = importlib.import_module("pyudev")
        pyudev.Context()
    except Exception as exc:
        return SubstrateProbe(False, f"pyudev unavailable: {exc}")
    return SubstrateProbe(True)


def probe_native_poll() -> SubstrateProbe:
    """Check that pyusb can be imported and a libusb backend located."""
    try:
        importlib.import_module("usb.core")
    except Exception as exc:
        return SubstrateProbe(False, f"pyusb unavailable: {exc}")
    for name in ("usb.backend.libusb1", "usb.backend.libusb0", "usb.backend.openusb"):
        try:
            backend = importlib.import_module(name).get_backend()
        except Exception:
            logger.debug("pyusb backend %s failed to load", name, exc_info=True)
            continue
        if backend is not None:
            return SubstrateProbe(True)
    return SubstrateProbe(False, "no libusb backend found")


def probe_command_poll() -> SubstrateProbe:
    return SubstrateProbe(True)


def default_probes(platform: Optional[str] = None) -> Dict[DetectionStrategy, Probe]:
    return {
        DetectionStrategy.NATIVE_EVENT: lambda: probe_native_event(platform),
        DetectionStrategy.NATIVE_POLL: probe_native_poll,
        DetectionStrategy.COMMAND_POLL: probe_command_poll,
    }


def _run_probe(strategy: DetectionStrategy, probe: Optional[Probe]) -> SubstrateProbe:
    if probe is None:
        return SubstrateProbe(False, "no probe registered")
    try:
        result = probe()
        if not result.available:
            raise ProbeUnavailable(result.reason or "unavailable")
    except ProbeUnavailable as exc:
        return SubstrateProbe(False, str(exc))
    except Exception as exc:
        logger.warning("probe for %s raised: %s", strategy.value, exc)
        return SubstrateProbe(False, str(exc))
    return result


def select_strategy(
    probes: Optional[Mapping[DetectionStrategy, Probe]] = None,
    *,
    forced: Optional[str] = None,
) -> StrategySelection:
    """Probe substrates once, in priority order, and pick the first usable one.

    Never raises: command polling is the terminal fallback and is always
    considered available.
    """
    probes = probes if probes is not None else default_probes()
    results: Dict[DetectionStrategy, SubstrateProbe] = {}
    for strategy in PRIORITY:
        if strategy is DetectionStrategy.COMMAND_POLL:
            results[strategy] = SubstrateProbe(True)
            continue
        results[strategy] = _run_probe(strategy, probes.get(strategy))
        if not results[strategy].available:
            logger.warning("%s not available: %s", strategy.value, results[strategy].reason)

    chosen: Optional[DetectionStrategy] = None
    if forced:
        try:
            wanted = DetectionStrategy(forced)
        except ValueError:
            logger.warning("ignoring unknown strategy %r", forced)
        else:
            if results[wanted].available:
                chosen = wanted
            else:
                logger.warning("requested strategy %s is unavailable; falling back", wanted.value)
    if chosen is None:
        chosen = next(strategy for strategy in PRIORITY if results[strategy].available)

    logger.info("Using %s for USB monitoring", chosen.value)
    return StrategySelection(
        strategy=chosen,
        availability={strategy.value: result.available for strategy, result in results.items()},
        reasons={strategy.value: result.reason for strategy, result in results.items() if result.reason},
    )


__all__ = [
    "DetectionStrategy",
    "PRIORITY",
    "Probe",
    "StrategySelection",
    "SubstrateProbe",
    "default_probes",
    "probe_command_poll",
    "probe_native_event",
    "probe_native_poll",
    "select_strategy",
]
