from __future__ import annotations

import logging
import math
import re
from functools import cmp_to_key
from typing import Collection, Dict, List, Mapping, Optional, Sequence

import numpy as np

from variscout.engine.capability import NELSON_RULE2_RUN
from variscout.engine.spc_types import (
    CapabilityControlLimits,
    CapabilityControlStatus,
    ChannelPerformanceData,
    ChannelResult,
    PerformanceSummary,
    SpecLimits,
)
from variscout.engine.spc_utils import DataLike, as_frame, numeric_outcome
from variscout.engine.thresholds import DEFAULT_CPK_THRESHOLDS, CpkThresholds, classify_cpk

logger = logging.getLogger(__name__)

HEALTH_LEVELS = ("critical", "warning", "capable", "excellent")
HEALTH_ORDER = {level: i for i, level in enumerate(HEALTH_LEVELS)}

# channel counts above which a UI should warn / refuse
CHANNEL_LIMITS = {"warn": 200, "max": 500}


# =========================
# Channel statistics
# =========================

def calculate_channel_stats(
    data: DataLike,
    channel_id: str,
    specs: SpecLimits,
    label: Optional[str] = None,
    thresholds: CpkThresholds = DEFAULT_CPK_THRESHOLDS,
) -> Optional[ChannelResult]:
    """Capability of one measurement column. Cp/Cpk stay None when the channel has no spread."""
    values = numeric_outcome(as_frame(data), channel_id).to_numpy(dtype=float)
    n = int(values.size)
    if n < 2:
        logger.debug("Channel '%s' skipped: %d numeric values.", channel_id, n)
        return None

    mean = float(values.mean())
    std_dev = float(values.std(ddof=1))

    cp: Optional[float] = None
    cpk: Optional[float] = None
    if std_dev > 0:
        if specs.usl is not None and specs.lsl is not None:
            cp = (specs.usl - specs.lsl) / (6 * std_dev)
            cpk = min((specs.usl - mean) / (3 * std_dev), (mean - specs.lsl) / (3 * std_dev))
        elif specs.usl is not None:
            cpk = (specs.usl - mean) / (3 * std_dev)
        elif specs.lsl is not None:
            cpk = (mean - specs.lsl) / (3 * std_dev)

    out_of_spec = np.zeros(n, dtype=bool)
    if specs.usl is not None:
        out_of_spec |= values > specs.usl
    if specs.lsl is not None:
        out_of_spec |= values < specs.lsl

    return ChannelResult(
        id=channel_id,
        label=label or channel_id,
        n=n,
        mean=mean,
        std_dev=std_dev,
        min=float(values.min()),
        max=float(values.max()),
        health=classify_cpk(cpk, thresholds),
        out_of_spec_percentage=float(out_of_spec.sum()) / n * 100.0,
        values=values.tolist(),
        cp=cp,
        cpk=cpk,
    )


def _summary(channels: Sequence[ChannelResult]) -> PerformanceSummary:
    health_counts = {level: 0 for level in HEALTH_LEVELS}
    for channel in channels:
        health_counts[channel.health] += 1

    cpks = np.array([c.cpk for c in channels if c.cpk is not None], dtype=float)
    return PerformanceSummary(
        total_channels=len(channels),
        health_counts=health_counts,
        mean_cpk=float(cpks.mean()) if cpks.size else 0.0,
        min_cpk=float(cpks.min()) if cpks.size else 0.0,
        max_cpk=float(cpks.max()) if cpks.size else 0.0,
        std_dev_cpk=float(cpks.std(ddof=1)) if cpks.size > 1 else 0.0,
        needs_attention_count=health_counts["critical"] + health_counts["warning"],
    )


def calculate_channel_performance(
    data: DataLike,
    channel_ids: Sequence[str],
    specs: SpecLimits,
    labels: Optional[Mapping[str, str]] = None,
    thresholds: CpkThresholds = DEFAULT_CPK_THRESHOLDS,
) -> ChannelPerformanceData:
    df = as_frame(data)
    labels = labels or {}
    if len(channel_ids) > CHANNEL_LIMITS["max"]:
        raise ValueError(f"{len(channel_ids)} channels requested; at most {CHANNEL_LIMITS['max']} can be analysed at once.")
    if len(channel_ids) > CHANNEL_LIMITS["warn"]:
        logger.info("Analysing %d channels; large channel counts are slow to review.", len(channel_ids))

    channels = []
    for channel_id in channel_ids:
        result = calculate_channel_stats(df, channel_id, specs, labels.get(channel_id), thresholds)
        if result is not None:
            channels.append(result)
    return ChannelPerformanceData(channels=channels, summary=_summary(channels), specs=specs)


# =========================
# Sorting / filtering
# =========================

def _label_number(label: str) -> Optional[int]:
    digits = re.sub(r"\D", "", label)
    return int(digits) if digits else None


def _compare_names(a: ChannelResult, b: ChannelResult) -> int:
    a_num, b_num = _label_number(a.label), _label_number(b.label)
    if a_num is not None and b_num is not None:
        return a_num - b_num
    return (a.label > b.label) - (a.label < b.label)


def _cpk_or_min(channel: ChannelResult) -> float:
    return -math.inf if channel.cpk is None else channel.cpk


def sort_channels(channels: Sequence[ChannelResult], sort_by: str = "cpk-asc") -> List[ChannelResult]:
    """Sort modes: 'cpk-asc' (worst first, no Cpk first), 'cpk-desc', 'name' (numbered labels numerically), 'health'."""
    if sort_by == "cpk-asc":
        return sorted(channels, key=_cpk_or_min)
    if sort_by == "cpk-desc":
        return sorted(channels, key=_cpk_or_min, reverse=True)
    if sort_by == "name":
        return sorted(channels, key=cmp_to_key(_compare_names))
    if sort_by == "health":
        return sorted(channels, key=lambda c: (HEALTH_ORDER[c.health], c.cpk if c.cpk is not None else 0.0))
    raise ValueError(f"Unknown channel sort '{sort_by}'.")


def filter_channels_by_health(channels: Sequence[ChannelResult], health_levels: Collection[str]) -> List[ChannelResult]:
    wanted = set(health_levels)
    return [c for c in channels if c.health in wanted]


def get_channels_needing_attention(channels: Sequence[ChannelResult]) -> List[ChannelResult]:
    return sort_channels(filter_channels_by_health(channels, ("critical", "warning")), "cpk-asc")


def get_worst_channels(channels: Sequence[ChannelResult], n: int) -> List[ChannelResult]:
    return sort_channels(channels, "cpk-asc")[:n]


def get_best_channels(channels: Sequence[ChannelResult], n: int) -> List[ChannelResult]:
    return sort_channels(channels, "cpk-desc")[:n]


# =========================
# Control limits on capability
# =========================

def calculate_capability_control_limits(channels: Sequence[ChannelResult], metric: str = "cpk") -> Optional[CapabilityControlLimits]:
    """I-chart limits over the channels' Cp or Cpk. LCL is clamped at 0."""
    values = np.array(
        [v for v in (getattr(c, metric) for c in channels) if v is not None and not math.isnan(v)],
        dtype=float,
    )
    if values.size < 2:
        return None

    mean = float(values.mean())
    std_dev = float(values.std(ddof=1))
    return CapabilityControlLimits(
        mean=mean,
        std_dev=std_dev,
        ucl=mean + 3 * std_dev,
        lcl=max(0.0, mean - 3 * std_dev),
        n=int(values.size),
    )


def get_capability_control_status(
    channels: Sequence[ChannelResult],
    limits: CapabilityControlLimits,
    metric: str = "cpk",
) -> Dict[str, CapabilityControlStatus]:
    in_control: List[bool] = []
    above_mean: List[bool] = []
    for channel in channels:
        value = getattr(channel, metric)
        if value is None:
            in_control.append(False)
            above_mean.append(False)
        else:
            in_control.append(limits.lcl <= value <= limits.ucl)
            above_mean.append(value > limits.mean)

    # Nelson rule 2 over the channel sequence
    violations = set()
    run_start = 0
    for i in range(1, len(above_mean) + 1):
        if i == len(above_mean) or above_mean[i] != above_mean[run_start]:
            if i - run_start >= NELSON_RULE2_RUN:
                violations.update(range(run_start, i))
            run_start = i

    return {
        channel.id: CapabilityControlStatus(in_control=in_control[i], nelson_rule2_violation=i in violations)
        for i, channel in enumerate(channels)
    }
