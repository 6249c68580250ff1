"""Real-time infrastructure — Redis pub/sub + WebSocket.

Learn: Events flow through two paths:
1. Workers/routers → emit_by_policy → Redis PUBLISH on exactly one channel
2. Redis PSUBSCRIBE → per-connection multiplexer → merged stream → WebSocket

Each WebSocket holds at most one upstream Redis pub/sub connection no matter
how many logical subscriptions the client opens.
"""
