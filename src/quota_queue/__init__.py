"""Rate-limited, priority-aware request scheduling for quota-constrained APIs."""

__version__ = "0.1.0"
