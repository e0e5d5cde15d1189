"""Intensity normalisation of multi-tissue maps."""
