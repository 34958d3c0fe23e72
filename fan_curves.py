"""
Fan curves: temperature -> duty cycle

A profile is a list of (temperature, duty) points ordered by temperature.
The duty cycle for a control temperature is interpolated between the greatest
point at or below it and the least point strictly above it. A temperature at
an exact point therefore interpolates towards the next point rather than
across a zero-width interval.

Anything outside the curve (below the first point, at or above the last, or
an empty curve) runs the fans at 100%.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

MAX_TEMPERATURE = 100.0
MAX_DUTY = 100


class ProfileError(Exception):
    """Profile missing, empty or not covering the requested temperature"""


class ProfileName(Enum):
    AIR_SILENT = "AirSilent"
    AIR_BALANCED = "AirBalanced"
    LIQUID_SILENT = "LiquidSilent"
    LIQUID_BALANCED = "LiquidBalanced"
    LIQUID_PERFORMANCE = "LiquidPerformance"
    MAXIMUM = "Maximum"
    CUSTOM = "Custom"


class TemperatureMode(Enum):
    """How a fan combines several temperature sources"""

    AVERAGE = "Average"
    MAX = "Max"


@dataclass(frozen=True)
class ProfilePoint:
    temp: float  # °C
    duty: int  # 0-100


Profile = Sequence[ProfilePoint]

SATURATED = ProfilePoint(MAX_TEMPERATURE, MAX_DUTY)


def _curve(*points: Tuple[float, int]) -> Tuple[ProfilePoint, ...]:
    return tuple(ProfilePoint(temp, duty) for temp, duty in points)


# Air coolers tolerate much higher temperatures than a coolant loop, so the
# air curves are keyed to component temperature and the liquid curves to
# coolant temperature.
AIR_SILENT = _curve((0, 20), (40, 20), (60, 40), (75, 70), (85, 100), (100, 100))
AIR_BALANCED = _curve((0, 25), (35, 25), (50, 45), (65, 70), (80, 100), (100, 100))
LIQUID_SILENT = _curve((0, 20), (30, 20), (35, 35), (40, 60), (45, 100), (100, 100))
LIQUID_BALANCED = _curve((0, 25), (28, 25), (33, 45), (38, 70), (42, 100), (100, 100))
LIQUID_PERFORMANCE = _curve(
    (0, 40), (25, 40), (30, 60), (35, 85), (38, 100), (100, 100)
)
MAXIMUM = _curve((0, 100), (100, 100))

BUILTIN_PROFILES: Dict[ProfileName, Tuple[ProfilePoint, ...]] = {
    ProfileName.AIR_SILENT: AIR_SILENT,
    ProfileName.AIR_BALANCED: AIR_BALANCED,
    ProfileName.LIQUID_SILENT: LIQUID_SILENT,
    ProfileName.LIQUID_BALANCED: LIQUID_BALANCED,
    ProfileName.LIQUID_PERFORMANCE: LIQUID_PERFORMANCE,
    ProfileName.MAXIMUM: MAXIMUM,
}

FALLBACK_PROFILE = ProfileName.AIR_BALANCED


def interpolate(x: float, x1: float, x2: float, y1: float, y2: float) -> int:
    """Linear interpolation rounded half up to the nearest integer"""
    if x1 == x2:
        return int(np.floor(y1 + 0.5))
    y = y1 + (y2 - y1) * (x - x1) / (x2 - x1)
    return int(np.floor(y + 0.5))


def select_points(
    profile: Profile, temperature: float
) -> Tuple[ProfilePoint, ProfilePoint]:
    """Find the interpolation interval for a temperature

    Returns:
        (lower, higher): greatest point with temp <= temperature and least
        point with temp > temperature

    Raises:
        ProfileError: If the temperature is not covered by the profile
    """
    lower: Optional[ProfilePoint] = None
    higher: Optional[ProfilePoint] = None

    for point in profile:
        if point.temp <= temperature:
            if lower is None or point.temp >= lower.temp:
                lower = point
        elif higher is None or point.temp < higher.temp:
            higher = point

    if lower is None or higher is None:
        raise ProfileError(
            f"No interval for {temperature} °C in profile with {len(profile)} points"
        )
    return lower, higher


def evaluate(profile: Profile, temperature: float, name: str = "profile") -> int:
    """Duty cycle for a control temperature

    Args:
        profile: Curve points ordered by temperature
        temperature: Control temperature [°C]
        name: Profile name used in the warning for broken profiles

    Returns:
        Duty cycle 0-100; 100 if the profile does not cover the temperature
    """
    try:
        lower, higher = select_points(profile, temperature)
    except ProfileError:
        logger.warning("Fan profile %s incomplete or broken, using max values!", name)
        lower = higher = SATURATED

    return interpolate(temperature, lower.temp, higher.temp, lower.duty, higher.duty)


def control_temperature(
    readings: Iterable[Optional[float]],
    mode: TemperatureMode,
    name: str = "fan",
) -> float:
    """Combine the readable temperature sources of a fan

    Unreadable sources (None) are skipped. With nothing readable the result
    is MAX_TEMPERATURE so missing data never slows a fan down.
    """
    values = [r for r in readings if r is not None]
    if not values:
        logger.warning(
            "No valid temperature sources found for %s, assuming %.0f°C",
            name,
            MAX_TEMPERATURE,
        )
        return MAX_TEMPERATURE

    temps = np.array(values, dtype=float)
    if mode is TemperatureMode.AVERAGE:
        return float(np.mean(temps))
    return float(np.max(temps))


def resolve_profile(
    active: ProfileName,
    custom_name: Optional[str],
    profiles: Dict[str, List[ProfilePoint]],
) -> Tuple[str, Profile]:
    """Look up the curve a fan should use

    Custom profiles are looked up by name in the configured profiles. An
    unknown name falls back to AirBalanced; a known but broken one is
    returned as is and saturates in evaluate().

    Returns:
        (display name, curve)
    """
    if active is not ProfileName.CUSTOM:
        return active.value, BUILTIN_PROFILES[active]

    if custom_name is None or custom_name not in profiles:
        logger.warning(
            'Custom profile "%s" not found, falling back to "%s".',
            custom_name,
            FALLBACK_PROFILE.value,
        )
        return FALLBACK_PROFILE.value, BUILTIN_PROFILES[FALLBACK_PROFILE]

    return custom_name, profiles[custom_name]
