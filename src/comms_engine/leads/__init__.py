"""Read-only access to business leads for phone-number matching."""
