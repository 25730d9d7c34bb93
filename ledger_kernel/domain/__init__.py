"""Pure domain types: clock, DTOs and settlement value objects.  Zero I/O."""
