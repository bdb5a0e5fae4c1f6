"""Remote inference gateway, error classification and confidence policy."""
