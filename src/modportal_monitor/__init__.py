"""Mod portal update monitor."""
