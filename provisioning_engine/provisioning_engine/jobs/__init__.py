"""Background job dispatch, retry backoff and the periodic sweep loop."""
