"""
Job queues — the two blocking consumers of the worker.

- inbound_events  → InboundConsumer: normalize, resolve, persist, reply
- marketing_queue → CampaignConsumer: rate-limited template sends with retry
Supports Redis lists (production) and in-memory asyncio.Queue (dev/tests).
"""
