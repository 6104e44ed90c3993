"""Core building blocks: settings, events, errors and model bases."""
