"""Key acquisition: prompts, key files, smartcard unlock."""
