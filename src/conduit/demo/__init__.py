"""Demo engine for exercising conduit without a real automation backend."""
