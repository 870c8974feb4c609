"""CV optimization assistant: job analysis, gap scoring and fact-preserving rewrites."""
