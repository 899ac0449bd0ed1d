"""HTTP and WebSocket binding."""
