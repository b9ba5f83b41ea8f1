"""
Test suite for the continuous synchronization system.

Covers the components behind one sync run:
- SyncOperation models and operation results
- PathPolicy ignore rules and target containment
- RetryableIO retries and atomic copies
- SyncQueue ordering and single-flight draining
- SourceTreeWatcher notifications and debouncing
- InitialScanner tree walks
- SyncEngine lifecycle and per-operation decisions
"""
