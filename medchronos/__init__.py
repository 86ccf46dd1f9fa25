"""MedChronos AI service: longitudinal imaging captioning, reports and chat."""

__version__ = "0.1.0"
