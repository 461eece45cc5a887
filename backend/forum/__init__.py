"""Realtime forum chat backend."""
