"""HTTP routers for the calsync backend."""
