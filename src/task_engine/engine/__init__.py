"""Task execution engine: admission, dispatch, retries and run persistence."""
