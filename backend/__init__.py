"""Music bingo backend: card generation, win detection and timed Spotify playback."""
