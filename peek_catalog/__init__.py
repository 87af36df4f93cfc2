"""Multi-instance entity query, exclusion and ranking core for Peek."""
