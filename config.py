import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # MongoDB
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_NAME = os.getenv("DATABASE_NAME")

    # "mongo" or "file"; empty means mongo when a database is configured
    VOTER_STORE = os.getenv("VOTER_STORE", "")
    DATA_DIR = os.getenv("DATA_DIR", "data")

    # Chain
    RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")
    CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "")
    ABI_PATH = os.getenv("ABI_PATH", "")
    ADMIN_PRIVATE_KEY = os.getenv("ADMIN_PRIVATE_KEY", "")
    EXPECTED_CHAIN_ID = os.getenv("EXPECTED_CHAIN_ID", "0xaa36a7")  # Sepolia
    TX_TIMEOUT_SECONDS = int(os.getenv("TX_TIMEOUT_SECONDS", "120"))

    # Simulated biometric / OTP verification
    DEMO_MODE = _flag("DEMO_MODE")
    OTP_EXPIRY_SECONDS = int(os.getenv("OTP_EXPIRY_SECONDS", "120"))
    OTP_RESEND_MIN_INTERVAL = int(os.getenv("OTP_RESEND_MIN_INTERVAL", "60"))
    OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))

    # Wallet sign-in
    AUTH_NONCE_TTL_SECONDS = int(os.getenv("AUTH_NONCE_TTL_SECONDS", "300"))
    AUTH_SESSION_TTL_SECONDS = int(os.getenv("AUTH_SESSION_TTL_SECONDS", "3600"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
