"""
Core runtime primitives shared by the session subsystem.

- scheduler: clocks and cancellable timers (asyncio-backed and virtual)
"""
