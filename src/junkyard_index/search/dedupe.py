from typing import Sequence

from ..models.vehicle import Vehicle

DEFAULT_PRIORITY = ("pyp", "row52")


def _rank(source: str, priority: Sequence[str]) -> int:
    try:
        return list(priority).index(source)
    except ValueError:
        return len(priority)


def dedupe(vehicles: list[Vehicle], priority: Sequence[str] = DEFAULT_PRIORITY) -> list[Vehicle]:
    """Collapse vehicles sharing a VIN, keeping the highest-priority source.

    The survivor takes the slot of the first vehicle seen with that VIN.
    Vehicles without a VIN are never merged.
    """
    kept: list[Vehicle] = []
    slot_by_vin: dict[str, int] = {}
    for vehicle in vehicles:
        vin = (vehicle.vin or "").strip().upper()
        if not vin:
            kept.append(vehicle)
            continue
        slot = slot_by_vin.get(vin)
        if slot is None:
            slot_by_vin[vin] = len(kept)
            kept.append(vehicle)
        elif _rank(vehicle.source, priority) < _rank(kept[slot].source, priority):
            kept[slot] = vehicle
    return kept
