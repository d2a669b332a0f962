"""
Core modules for TTS Cost Guard.

This package contains the flag store, provider selection, throttling,
usage metrics, pricing and the budget monitor.
"""
