import os
from dotenv import load_dotenv

load_dotenv()

user = os.getenv("DB_USER")
password = os.getenv("DB_PASSWORD")
host = os.getenv("DB_HOST")
port = os.getenv("DB_PORT")
db_name = os.getenv("DB_NAME")

if os.getenv("DATABASE_URL"):
    database_url = os.getenv("DATABASE_URL")
elif user and host and db_name:
    database_url = f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"
else:
    database_url = None
sqlite_path = os.getenv("SQLITE_PATH")

redis_host = os.getenv("REDIS_HOST", "localhost")
redis_port = int(os.getenv("REDIS_PORT", "6379"))

heartbeat_interval = float(os.getenv("HEARTBEAT_INTERVAL_SEC", "3.0"))
heartbeat_timeout = float(os.getenv("HEARTBEAT_TIMEOUT_SEC", "10.0"))
sync_interval = float(os.getenv("SYNC_INTERVAL_SEC", "1.0"))
max_reconnect_attempts = int(os.getenv("MAX_RECONNECT_ATTEMPTS", "5"))

if __name__ == "__main__":
    print(database_url, redis_host, redis_port)
