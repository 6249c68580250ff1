"""Background jobs — Redis-backed queues and lazily started workers.

Learn: Three layers, leaves first:
1. JobQueue / Worker / QueueEvents — storage, processing and notifications
2. QueueRegistry — creates every named queue once per process
3. LazyWorkerManager — starts a worker when jobs arrive, pauses it when the
   queue goes quiet, destroys it after a longer quiet period
"""
