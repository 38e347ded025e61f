"""MedAlert dispatch backend: alert lifecycle, proximity matching and realtime fan-out."""

__version__ = "0.1.0"
