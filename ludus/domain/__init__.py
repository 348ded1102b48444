"""Pure business rules with no I/O: status machines and booking policy."""
