# Release cycle: build state machine, stores and collaborators
