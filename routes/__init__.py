"""HTTP routers, one per resource: users, jobs, admins."""
