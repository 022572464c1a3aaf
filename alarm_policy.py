"""Decides when the rider should be warned and when to wake them up.

Thresholds here are meters. Stop matching elsewhere uses kilometers; convert
with ``geo.km_to_m`` before calling ``evaluate``. The trigger radius is
inclusive (exactly 100 m fires); the alert radius is exclusive.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


ALERT_DISTANCE_M = 500.0
TRIGGER_DISTANCE_M = 100.0


class Mood(str, Enum):
    SLEEPING = "sleeping"
    ALERT = "alert"
    TRIGGERED = "triggered"


@dataclass(frozen=True)
class AlarmDecision:
    mood: Mood
    # True only for the single evaluation that first reaches TRIGGERED.
    fire_arrival: bool = False


def _closer_than(distance_m: Optional[float], threshold_m: float) -> bool:
    # NaN and None both compare as "not close".
    return distance_m is not None and distance_m < threshold_m


def _within(distance_m: Optional[float], threshold_m: float) -> bool:
    return distance_m is not None and distance_m <= threshold_m


def evaluate(
    current_stop_index: int,
    destination_index: int,
    distance_to_destination_m: Optional[float],
    already_triggered: bool = False,
) -> AlarmDecision:
    if already_triggered:
        return AlarmDecision(mood=Mood.TRIGGERED)

    at_destination = current_stop_index >= 0 and current_stop_index == destination_index
    if at_destination or _within(distance_to_destination_m, TRIGGER_DISTANCE_M):
        return AlarmDecision(mood=Mood.TRIGGERED, fire_arrival=True)

    if current_stop_index >= 0:
        if current_stop_index == destination_index - 2:
            return AlarmDecision(mood=Mood.ALERT)
        if current_stop_index == destination_index - 1 and _closer_than(
            distance_to_destination_m, ALERT_DISTANCE_M
        ):
            return AlarmDecision(mood=Mood.ALERT)

    return AlarmDecision(mood=Mood.SLEEPING)


__all__ = ["ALERT_DISTANCE_M", "AlarmDecision", "Mood", "TRIGGER_DISTANCE_M", "evaluate"]
