# compatibility checks run before a rider joins an existing group
from pickup_admin import capacity, config
from pickup_admin.rider_data import Group, Rider
from pickup_admin.windows import overlaps


# same airport and same direction (a group is one vehicle going one way)
def route_compatible(group: Group, rider: Rider) -> bool:
    return group.airport == rider.airport and group.to_airport == rider.to_airport


def time_compatible(group: Group, rider: Rider) -> bool:
    """Dates must match and the rider's window must touch the group's window.

    An empty group has no window to miss, so only the date is checked.
    """
    if group.date != rider.date:
        return False
    group_window = group.window
    if group_window is None:
        return True
    return overlaps(rider.window, group_window)


def capacity_compatible(group: Group, rider: Rider) -> bool:
    # advisory: callers surface False as a warning the admin can override
    return capacity.bag_units(group.riders + [rider]) <= config.RECOMMENDED_MAX_BAG_UNITS
