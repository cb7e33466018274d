"""Plugin management: sources, downloads, registry, backups and history."""
