"""HTTP API for the Parlor message store."""
