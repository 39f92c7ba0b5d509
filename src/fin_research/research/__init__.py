"""Bounded plan / execute / validate / reflect loop for research sessions."""
