"""
Tests for bag units, the vehicle class table and the subsidy rule
"""

from pickup_admin import config
from pickup_admin.capacity import VehicleClass, bag_units, is_subsidized, size_ceiling, vehicle_class

from conftest import make_rider


def test_bag_units_counts_checked_double():
    """Two riders with 1 checked + 1 carry-on each come to 6 units, an XL"""
    riders = [make_rider(i, checked=1, carry_on=1) for i in (1, 2)]
    assert bag_units(riders) == 6, f"Expected 6 bag units, got {bag_units(riders)}"
    assert vehicle_class(2, bag_units(riders)) == VehicleClass.XL


def test_bag_units_is_additive():
    """Units of a union equal the sum of the units of its parts"""
    a = [make_rider(1, checked=2), make_rider(2, carry_on=3)]
    b = [make_rider(3, checked=1, carry_on=1)]
    assert bag_units(a + b) == bag_units(a) + bag_units(b)
    assert bag_units([]) == 0, "No riders means no units"


def test_vehicle_class_table():
    """Spot checks across every group size"""
    cases = {
        (2, 0): VehicleClass.X,
        (3, 4): VehicleClass.X,
        (3, 6): VehicleClass.XL,
        (3, 10): VehicleClass.XL,
        (4, 3): VehicleClass.X,
        (4, 4): VehicleClass.XL,
        (4, 8): VehicleClass.XXL,
        (5, 5): VehicleClass.XL,
        (5, 8): VehicleClass.XXL,
        (6, 3): VehicleClass.XL,
        (6, 6): VehicleClass.XXL,
    }
    for (size, units), expected in cases.items():
        got = vehicle_class(size, units)
        assert got == expected, f"size {size}, {units} units: expected {expected}, got {got}"


def test_vehicle_class_rejects_out_of_table():
    """Sizes outside 2-6 and units past a size's ceiling have no class"""
    assert vehicle_class(5, 9) is None, "5 riders with 9 units is over the XXL range"
    assert vehicle_class(6, 7) is None
    assert vehicle_class(4, 11) is None
    assert vehicle_class(1, 0) is None, "A single rider is not a group"
    assert vehicle_class(7, 0) is None


def test_small_groups_can_exceed_recommended_units():
    """The per-size ceiling is the hard limit; 11-12 units still fit an XXL for 2-3 riders"""
    assert vehicle_class(2, config.RECOMMENDED_MAX_BAG_UNITS + 1) == VehicleClass.XXL
    assert vehicle_class(3, 12) == VehicleClass.XXL
    assert vehicle_class(3, 13) is None
    assert size_ceiling(3) == 12
    assert size_ceiling(6) == 6
    assert size_ceiling(9) is None


def test_subsidy_thresholds():
    """ONT subsidizes from 2 riders, LAX and everything else from 3"""
    assert is_subsidized("ONT", 2)
    assert not is_subsidized("LAX", 2)
    assert is_subsidized("lax", 3), "Airport codes are compared case-insensitively"
    assert not is_subsidized("SNA", 2)
    assert is_subsidized("SNA", 3)
    assert not is_subsidized(None, 2)
