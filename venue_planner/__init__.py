"""Team event planner: preference aggregation, venue ranking and voting."""

__version__ = "0.1.0"
