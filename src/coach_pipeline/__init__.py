"""
coach_pipeline: chunked transcription + scored coaching reports for long call recordings.
"""

__version__ = "0.4.0"
