# capacity model: bag units and vehicle class for a set of riders
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from pickup_admin import config


class VehicleClass(str, Enum):
    X = "X"
    XL = "XL"
    XXL = "XXL"


# group size -> inclusive (low, high, class) bag unit ranges
# the highest range for each size is that size's hard ceiling
VEHICLE_TABLE: Dict[int, Tuple[Tuple[int, int, VehicleClass], ...]] = {
    2: ((0, 4, VehicleClass.X), (5, 10, VehicleClass.XL), (11, 12, VehicleClass.XXL)),
    3: ((0, 4, VehicleClass.X), (5, 10, VehicleClass.XL), (11, 12, VehicleClass.XXL)),
    4: ((0, 3, VehicleClass.X), (4, 7, VehicleClass.XL), (8, 10, VehicleClass.XXL)),
    5: ((0, 5, VehicleClass.XL), (6, 8, VehicleClass.XXL)),
    6: ((0, 3, VehicleClass.XL), (4, 6, VehicleClass.XXL)),
}


# checked bags count double; personal items ride on laps and count zero
def bag_units(riders: Iterable) -> int:
    checked = 0
    carry_on = 0
    for r in riders:
        checked += int(r.checked_bags or 0)
        carry_on += int(r.carry_on_bags or 0)
    return checked * config.CHECKED_BAG_UNITS + carry_on * config.CARRY_ON_BAG_UNITS


def vehicle_class(group_size: int, units: int) -> Optional[VehicleClass]:
    """Look up the vehicle class for a group size and bag unit total.

    Returns None when the size is outside 2-6 or the bag units fall outside
    every range for that size. The per-size ceiling is the only hard limit.
    """
    for low, high, cls in VEHICLE_TABLE.get(group_size, ()):
        if low <= units <= high:
            return cls
    return None


def size_ceiling(group_size: int) -> Optional[int]:
    ranges = VEHICLE_TABLE.get(group_size)
    if not ranges:
        return None
    return ranges[-1][1]


def is_subsidized(airport: Optional[str], rider_count: int) -> bool:
    key = (airport or "").strip().upper()
    minimum = config.SUBSIDY_MIN_RIDERS.get(key, config.DEFAULT_SUBSIDY_MIN_RIDERS)
    return rider_count >= minimum
