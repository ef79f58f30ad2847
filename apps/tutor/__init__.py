"""Pronunciation tutor session engine: turn state, scoring and audio pipeline."""
