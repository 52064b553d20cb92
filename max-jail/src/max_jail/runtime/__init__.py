"""Host-side runtime: tool probing, SDK bootstrap and Android device control."""
