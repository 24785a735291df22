"""viewsim: simulated viewers deciding, segment by segment, whether to keep watching."""

__version__ = "1.0.0"
