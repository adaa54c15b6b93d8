"""NetGuard test suite."""
