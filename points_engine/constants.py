"""
Engine-wide constants for the points engine.

This module contains the fixed-point scales, protocol limits, known token
metadata and bootstrap defaults used throughout the codebase.
"""

class MathConstants:
    """Fixed-point scales used by index and points arithmetic."""

    RAY = 10 ** 27
    HALF_RAY = RAY // 2
    WAD = 10 ** 18
    WAD_RAY_RATIO = 10 ** 9

    # Aave-style year length (365.2425 days)
    SECONDS_PER_YEAR = 31556952

    # Points are stored as integers scaled by 1e18
    POINTS_SCALE = 10 ** 18

    BASIS_POINTS = 10000

    # USD prices carry 8 decimals
    PRICE_DECIMALS = 8
    PRICE_SCALE = 10 ** 8

class TimeConstants:
    """Time units in seconds."""

    SECONDS_PER_HOUR = 3600
    SECONDS_PER_DAY = 86400
    SECONDS_PER_WEEK = 7 * 86400
    HOURS_PER_DAY = 24

class LeaderboardConstants:
    """Constants governing epochs, accrual rates and ranking structures."""

    LEADERBOARD_START_BLOCK = 46264051
    DUST_LOCK_START_BLOCK = 39468872

    # Default rates if no config has been emitted
    DEFAULT_DEPOSIT_RATE_BPS = 100
    DEFAULT_BORROW_RATE_BPS = 500
    DEFAULT_COOLDOWN_SECONDS = 3600

    # Catch-up bound for scheduled epoch transitions per call
    MAX_SCHEDULED_TRANSITIONS = 5

    # A stored oracle reset baseline is trusted within this many seconds of epoch start
    RESET_BASELINE_TOLERANCE = 60

    # Multiplier caps (bps)
    MAX_MULTIPLIER = 10
    MAX_COMBINED_MULTIPLIER = 100000
    MAX_NFT_MULTIPLIER = 50000
    MAX_VP_MULTIPLIER = 50000
    NEUTRAL_MULTIPLIER = 10000
    MAX_VP_TIERS = 20

    # Ranking
    MAX_TOP_K = 100
    MAX_BUCKETS = 120
    ALL_TIME_EPOCH = 0
    GLOBAL_SCOPE = 'global'

class DustLockConstants:
    """Vote-escrow lock parameters."""

    # 365 days
    MAX_LOCK_TIME = 31536000
    WEEK = 7 * 86400

class AddressConstants:
    """Known protocol and token addresses (lowercase)."""

    ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
    DUST_LOCK_ADDRESS = '0xbb4738d05ad1b3da57a4881bae62ce9bb1eeed6c'
    NFT_PARTNERSHIP_REGISTRY_ADDRESS = '0xd936a70bd854a88c4b0d7fb21091ebc6209b13e2'

    WMON = '0x3bd359c1119da7da1d913d1c4d2b7c461115433a'
    WBTC = '0x0555e30da8f98308edb960aa94c0db47230d2b9c'
    WETH = '0xee8c0e9f1bffb4eb878d8f15f368a02a35481242'
    USDC = '0x754704bc059f8c67012fed69bc8a327a5aafb603'
    USDT0 = '0xe7cd86e13ac4309349f30b3435a9d337750fc82d'
    AUSD = '0x00000000efe302beaa2b3e6e1b18d08d69a9012a'
    EARNAUSD = '0x103222f020e98bba0ad9809a011fdf8e6f067496'
    SHMON = '0x1b68626dca36c7fe922fd2d55e4f631d962de19c'
    SMON = '0xa3227c5969757783154c60bf0bc1944180ed81b9'
    GMON = '0x8498312a6b3cbd158bf0c93abdcf29e6e4f55081'
    DUST = '0xad96c3dffcd6374294e2573a7fbba96097cc8d7c'

    # Intermediaries that must never accrue points
    KNOWN_GATEWAYS = frozenset({'0x800409dbd7157813bb76501c30e04596cc478f25'})

    # Mints to these are protocol revenue, not user deposits
    TREASURY_ADDRESSES = frozenset({
        '0xb2289e329d2f85f1ed31adbb30ea345278f21bcf',
        '0xe8599f3cc5d38a9ad6f3684cd5cea72f10dbc383',
        '0xbe85413851d195fc6341619cd68bfdc26a25b928',
        '0x5ba7fd868c40c16f7adfae6cf87121e13fc2f7a0',
        '0x8a020d92d6b119978582be4d3edfdc9f7b28bf31',
        '0x053d55f9b5af8694c503eb288a1b7e552f590710',
        '0x464c71f6c2f760dda6093dcb91c24c39e5d6e18c',
    })

class TokenConstants:
    """Token metadata and default oracle prices."""

    # address -> (symbol, decimals)
    KNOWN_TOKENS = {
        AddressConstants.WMON: ('WMON', 18),
        AddressConstants.SMON: ('sMON', 18),
        AddressConstants.GMON: ('gMON', 18),
        AddressConstants.SHMON: ('shMON', 18),
        AddressConstants.WETH: ('WETH', 18),
        AddressConstants.AUSD: ('AUSD', 6),
        AddressConstants.USDC: ('USDC', 6),
        AddressConstants.USDT0: ('USDT0', 6),
        AddressConstants.EARNAUSD: ('earnAUSD', 6),
        AddressConstants.WBTC: ('WBTC', 8),
        AddressConstants.DUST: ('DUST', 18),
    }

    DEFAULT_DECIMALS = 18

    # Static seed prices (8 decimals) used until a real oracle update arrives
    DEFAULT_PRICES_E8 = {
        'WETH': 445000000000,
        'WBTC': 12000000000000,
        'shMON': 22000000000,
        'WMON': 320000000,
        'AUSD': 100000000,
        'USDC': 100000000,
        'USDT0': 100000000,
        'earnAUSD': 100000000,
    }
    FALLBACK_PRICE_E8 = 100000000

class BootstrapConstants:
    """Defaults seeded when no configuration events have been received."""

    LEADERBOARD_CONFIG = {
        'deposit_rate_bps': 200,
        'borrow_rate_bps': 500,
        'vp_rate_bps': 2500,
        'lp_rate_bps': 2500,
        'supply_daily_bonus': 0.0,
        'borrow_daily_bonus': 0.0,
        'repay_daily_bonus': 0.0,
        'withdraw_daily_bonus': 0.0,
        'cooldown_seconds': 0,
        'min_daily_bonus_usd': 0.0,
    }

    NFT_MULTIPLIER_CONFIG = {'first_bonus': 1000, 'decay_ratio': 9000}

    # (collection, name, static_boost_bps)
    NFT_PARTNERSHIPS = (
        ('0x818030837e8350ba63e64d7dc01a547fa73c8279', 'The 10k Squad', 2000),
        ('0xfb5ba4061f5c50b1daa6c067bb2dfb0a8ebf6a8d', 'Overnads', 0),
        ('0x8255dacd8a45f4abe6dc821e6f7f3c92a8e22fbb', 'Solveil Pass', 0),
    )

    LP_POOLS = (
        {
            'pool': '0xd15965968fe8bf2babbe39b2fc5de1ab6749141f',
            'position_manager': '0x7197e214c0b767cfb76fb734ab638e2c192f4e53',
            'token0': AddressConstants.AUSD,
            'token1': AddressConstants.DUST,
            'fee': 10000,
            'lp_rate_bps': 2500,
        },
    )


def get_token_metadata(address: str):
    """Return (symbol, decimals) for a known token, else None."""
    return TokenConstants.KNOWN_TOKENS.get(normalize_address(address))


def normalize_address(address: str) -> str:
    return (address or '').lower()


def is_gateway_address(address: str) -> bool:
    return normalize_address(address) in AddressConstants.KNOWN_GATEWAYS


def is_treasury_address(address: str) -> bool:
    return normalize_address(address) in AddressConstants.TREASURY_ADDRESSES
