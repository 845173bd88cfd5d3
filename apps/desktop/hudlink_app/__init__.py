"""HudLink command-line application."""
