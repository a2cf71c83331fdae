"""HTTP surface: webhooks and health."""
