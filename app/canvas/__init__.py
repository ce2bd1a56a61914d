"""Canvas core: grid state, cooldown gate, write pipeline, fan-out and snapshots.

Kept free of FastAPI concerns so it can be driven by API routes, admin tooling and tests.
"""
