# Training Attendance Tracker - Modules Package
"""
Core business logic modules for the Training Attendance Tracker.
"""

__version__ = "1.0.0"
__description__ = "Core modules for training session attendance"
