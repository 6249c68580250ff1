"""Authentication.

Learn: This process never issues sessions; it verifies the JWT the recipe
app's session service hands out. HTTP routes and WebSocket handshakes both
resolve it to a CurrentIdentity (user id + optional household key).
"""
