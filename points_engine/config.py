import os
from dotenv import load_dotenv

load_dotenv()

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


class Config:
    """Points engine configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///points_engine.db')

    # Redis settings (optional processing lock)
    REDIS_URL = os.getenv('REDIS_URL')
    PROCESSING_LOCK_TTL = int(os.getenv('PROCESSING_LOCK_TTL', 30))

    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_LEVEL = os.getenv('LOG_LEVEL', '')

    # Epoch-1 testnet bonus map ({address: bonusBps})
    TESTNET_BONUS_FILE = os.getenv('TESTNET_BONUS_FILE', '')

    # Leaderboard sizing
    TOP_K_SIZE = int(os.getenv('TOP_K_SIZE', 100))

    @staticmethod
    def flag(name: str) -> bool:
        """Read a boolean environment flag at call time"""
        return os.getenv(name, '').strip().lower() in _TRUE_VALUES

    @classmethod
    def should_use_eth_calls(cls) -> bool:
        """External chain reads are on unless explicitly disabled"""
        return not (cls.flag('DISABLE_EXTERNAL_CALLS') or cls.flag('DISABLE_ETH_CALLS'))

    @classmethod
    def nft_chain_sync_enabled(cls) -> bool:
        return cls.should_use_eth_calls() and cls.flag('ENABLE_NFT_CHAIN_SYNC')

    @classmethod
    def lp_chain_sync_enabled(cls) -> bool:
        return cls.should_use_eth_calls() and cls.flag('ENABLE_LP_CHAIN_SYNC')

    @classmethod
    def bootstrap_enabled(cls) -> bool:
        return not cls.flag('DISABLE_BOOTSTRAP')

    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if cls.TOP_K_SIZE <= 0:
            raise ValueError("TOP_K_SIZE must be a positive integer")
        if cls.PROCESSING_LOCK_TTL <= 0:
            raise ValueError("PROCESSING_LOCK_TTL must be a positive integer")
        if cls.TESTNET_BONUS_FILE and not os.path.isfile(cls.TESTNET_BONUS_FILE):
            raise ValueError(f"TESTNET_BONUS_FILE not found: {cls.TESTNET_BONUS_FILE}")
