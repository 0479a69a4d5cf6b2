# Configuration file for the pickup admin groups engine
# Single source of truth for knobs/policies

import os

from dotenv import load_dotenv

load_dotenv()

# Supabase
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Group Size Constraints
MIN_GROUP_SIZE = 2
MAX_GROUP_SIZE = 6

# Bag Capacity
CHECKED_BAG_UNITS = 2   # a checked (large) bag takes the room of two carry-ons
CARRY_ON_BAG_UNITS = 1
RECOMMENDED_MAX_BAG_UNITS = 10  # advisory only; admins may override

# Subsidy Policy (minimum riders for a subsidized ride, per airport)
SUBSIDY_MIN_RIDERS = {
    "ONT": 2,
    "LAX": 3,
}
DEFAULT_SUBSIDY_MIN_RIDERS = 3

# Read Sizes (Supabase caps a select at 1000 rows; long .in_() lists overflow the URL)
FLIGHTS_PAGE_SIZE = 1000
CHANGELOG_PAGE_SIZE = 1000
USERS_BATCH_SIZE = 100

# Change Log
DEFAULT_ACTOR_ROLE = "Admin"
DISPLAY_TIMEZONE = "America/Los_Angeles"

# Default board window: from the last successful algorithm run up to this many days after it
ALGORITHM_WINDOW_DAYS = 15

# How long transient messages stay on screen (seconds)
ERROR_DISMISS_SECONDS = 3
CREATE_ERROR_DISMISS_SECONDS = 5

# Rows written by the admin surface are tagged with this source
MATCH_SOURCE = "manual"

# HTTP
API_HOST = os.getenv("PICKUP_ADMIN_HOST", "0.0.0.0")
API_PORT = int(os.getenv("PICKUP_ADMIN_PORT", "5002"))
