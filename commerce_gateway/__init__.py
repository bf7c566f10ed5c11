"""Commerce gateway: resilient provider calls and signed webhook ingestion.

Outbound calls to EasyPost and Veeqo go through ``ResilientClient``
(rate limit, retry, response cache). Inbound webhooks are verified,
recorded in the event store, and fanned out to in-process subscribers.
"""

__version__ = "0.1.0"
