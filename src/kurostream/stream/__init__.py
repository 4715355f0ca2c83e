"""Stream consumption: frames, events, render buffer and the session controller."""
