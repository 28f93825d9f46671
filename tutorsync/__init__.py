"""TutorSync live teaching-session service.

This package contains the session lifecycle coordinator, its shared-state
synchronizer, the annotation store and the termination aggregator, together
with the store and meeting-provider adapters they run on.
"""
