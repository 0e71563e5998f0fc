"""Job store: persisted job records, transitions and failure values."""
