"""Fixed master keys used across the test suite."""

MASTER_KEY_HEX = "0f1e2d3c4b5a69788796a5b4c3d2e1f000112233445566778899aabbccddeeff"
OTHER_KEY_HEX = "ff" * 32
