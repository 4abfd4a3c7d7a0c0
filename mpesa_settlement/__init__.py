"""M-Pesa STK Push payment settlement service."""

__version__ = "0.1.0"
