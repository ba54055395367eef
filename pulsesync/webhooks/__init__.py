"""Provider webhook verification and translation into SYNC jobs."""
