"""Test fixtures package."""

TEST_PASSWORD = "correct-horse-battery"
TEST_ENCRYPTION_SECRET = "test-encryption-secret-0123456789"
