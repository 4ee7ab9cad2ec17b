"""Network beacon building blocks: safe dialing, probing, buffering, metrics, redaction and WARP MDM files."""

__version__ = "0.1.0"