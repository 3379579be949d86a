"""Seedream Relay - credential-hiding proxy for Replicate's seedream-4 model."""

__version__ = "0.1.0"
