import os

# Test environment, set before config.py reads it on first import
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["VALKEY_HOST"] = ""
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["VALID_TOKENS"] = "fake-client-token"
os.environ["LOG_FILENAME"] = "test_ab_testing_service.log"
