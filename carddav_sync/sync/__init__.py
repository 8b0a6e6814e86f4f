"""
Contact reconciliation: vCard codec, identity resolution, locking and the engine.

Import from the submodules directly; storage modules depend on
carddav_sync.sync.contact, so this package re-exports nothing.
"""
