"""
Course content generation.

- orchestrator: decides which generation jobs to enqueue
- stages: per-job-type handlers run by the stage worker
- provider: Claude text generation with error classification
- prompts / parsing: prompt construction and response parsing
- sitemap: sitemap.xml rendering for generated articles
"""
