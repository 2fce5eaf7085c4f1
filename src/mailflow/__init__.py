"""Mailflow: automation email scheduling and multi-provider delivery engine."""
