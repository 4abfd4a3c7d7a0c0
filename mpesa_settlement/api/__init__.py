"""HTTP API for M-Pesa payment settlement."""
