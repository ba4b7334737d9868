"""
Processor webhook ingress and projection handlers.

- views: HTTP endpoint, signature check, routing, queueing
- handlers: per-event-type projections onto local entities
"""
