"""account_rotator: quota-aware rotation across a pool of OAuth accounts."""

__version__ = "0.1.0"
