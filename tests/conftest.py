import os

# Keep the tracer from trying to reach a local agent during tests
os.environ.setdefault("DD_TRACE_ENABLED", "false")
os.environ.setdefault("DD_INSTRUMENTATION_TELEMETRY_ENABLED", "false")

# Tests never reach a real manifest endpoint
os.environ.pop("EXPERIMENTS_MANIFEST_URL", None)
