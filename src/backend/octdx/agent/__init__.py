"""Per-image orchestration and the image set state machine."""
