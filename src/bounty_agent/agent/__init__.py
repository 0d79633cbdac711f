"""Cognitive loop: observation, decision gating, answering, realtime reactions."""
