"""
Operational tools for the Infinite Monkeys server.

- verify: check archive + hot store continuity and replay the full history
"""
