"""OCT Diagnosis Agent backend."""
