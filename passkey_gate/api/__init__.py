"""HTTP routers for the passkey gate service."""
