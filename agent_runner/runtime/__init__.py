"""Process supervision runtime: spawning, logging context, termination,
result channels and concurrency pools."""
