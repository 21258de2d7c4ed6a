"""Version control, ticket tracker and pull request backends."""
