"""High-level provisioning services."""
