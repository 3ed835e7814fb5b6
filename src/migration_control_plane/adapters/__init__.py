"""Storage, alerting and seeding adapters around the control plane core."""
