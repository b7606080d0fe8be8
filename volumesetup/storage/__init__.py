"""Block devices, encryption, filesystems and mounts."""
