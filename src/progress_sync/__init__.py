"""Progress Sync: durable quest progress saves and start-up catalog fixes."""
