"""QuizRank leaderboard aggregation and caching service."""
