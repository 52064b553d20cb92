"""APK acquisition: remote sources, container unwrapping and verification."""
