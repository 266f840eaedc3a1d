"""Tether: a bounded agent execution loop with a kill switch."""
