"""
Activity Inference

Vendor push events do not always carry the equipment-status trait. When it is
missing, thermostat mode + setpoints + temperature trend are the only signals
left, so heating/cooling is inferred from them.

The on-deltas and the trend delta trade missed runtime against phantom short
sessions and differ per installation, which is why both are settings.
"""

from .models import EquipmentStatus, ThermostatMode
from .settings import EngineSettings


def _delta(a: float, b: float) -> float:
    """a - b at sensor resolution (2 decimals)."""
    return round(a - b, 2)


def infer_activity(
    mode: ThermostatMode,
    current_temp_c: float | None,
    cool_setpoint_c: float | None,
    heat_setpoint_c: float | None,
    last_temp_c: float | None,
    settings: EngineSettings,
) -> EquipmentStatus:
    """Infer HEATING/COOLING/OFF when no explicit equipment status is available.

    Args:
        mode: Current thermostat mode
        current_temp_c: Ambient temperature of this reading (°C)
        cool_setpoint_c: Cool setpoint (°C)
        heat_setpoint_c: Heat setpoint (°C)
        last_temp_c: Previous known ambient temperature for the trend (°C)
        settings: Engine settings with cool_on_delta, heat_on_delta, trend_delta

    Returns:
        EquipmentStatus.HEATING, COOLING or OFF
    """
    if current_temp_c is None:
        return EquipmentStatus.OFF

    change = _delta(current_temp_c, last_temp_c) if last_temp_c is not None else 0.0
    falling = change < 0 and -change >= settings.trend_delta
    rising = change > 0 and change >= settings.trend_delta

    if mode.can_cool:
        if cool_setpoint_c is not None and _delta(current_temp_c, cool_setpoint_c) >= settings.cool_on_delta:
            return EquipmentStatus.COOLING
        if falling:
            return EquipmentStatus.COOLING

    if mode.can_heat:
        if heat_setpoint_c is not None and _delta(heat_setpoint_c, current_temp_c) >= settings.heat_on_delta:
            return EquipmentStatus.HEATING
        if rising:
            return EquipmentStatus.HEATING

    return EquipmentStatus.OFF
