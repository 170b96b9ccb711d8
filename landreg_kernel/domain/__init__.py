"""Pure domain layer: value objects, workflow tables, clock, authorization."""
