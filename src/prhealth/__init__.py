"""prhealth -- CloudStack pull-request quality signals."""

__version__ = "0.1.0"
