"""
Kiosk Kernel - order and rental lifecycle engine.

Drives orders and rental bookings for retail kiosks through their status
machines while keeping shared state consistent:
- Inventory is never oversold (guarded relative counter writes)
- Payment authorizations are either settled later or compensated
- Deferred side effects are exactly-once-effective under redelivery
"""

__version__ = "0.1.0"
