"""Front ends that drive the command registry."""
