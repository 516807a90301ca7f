"""Services making up the rewrite pipeline."""
