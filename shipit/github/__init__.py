"""GitHub API access via the gh CLI."""
