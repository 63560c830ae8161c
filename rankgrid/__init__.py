"""rankgrid: geographic rank tracking on a credit-gated schedule."""

__version__ = "1.0.0"
