"""Off-chain services for the BaseFlip and Cash-Out-or-Die contracts."""

__version__ = "0.1.0"
