"""HTTP route modules, one router per area."""
