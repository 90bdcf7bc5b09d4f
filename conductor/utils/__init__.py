"""Shared async subprocess, retry and logging helpers."""
