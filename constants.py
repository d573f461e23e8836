import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3002))

# Comma-separated list of allowed origins, "*" allows any origin
CORS_ALLOW_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if origin.strip()]

# "memory" keeps rooms in this process, "redis" shares them between relay instances
RELAY_BACKEND = os.getenv("RELAY_BACKEND", "memory").strip().lower()

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Seconds before Redis membership keys of a crashed instance expire (0 = never)
MEMBERSHIP_TTL = int(os.getenv("MEMBERSHIP_TTL", 86400))

ROOM_CAPACITY = 2
ROOM_KEY_LENGTH = 8

SIGNALING_SERVER_URL = os.getenv("SIGNALING_SERVER_URL", "ws://localhost:3002/ws")
