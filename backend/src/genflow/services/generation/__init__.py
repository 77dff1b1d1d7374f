"""Generation intake validation and lifecycle orchestration."""
