"""Pipeline core: hashing, ledger, stage machine, state store and run queue."""
