"""Models, constants, errors, configuration and the storage event bus."""
