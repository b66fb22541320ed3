"""
SheetCalc Constants Module
Contains all global constants, mappings, and configuration data.
"""

import math


# =============================================================================
# CURRENCY CONSTANTS
# =============================================================================

# Base currency every rate below is expressed in
BASE_CURRENCY = 'USD'

# Value of one unit of each currency in BASE_CURRENCY (fallback if no live rates)
FALLBACK_RATES = {
    'USD': 1.0,
    'EUR': 1.16,
    'GBP': 1.33,
    'JPY': 0.0064,
    'KRW': 0.00068,
    'CNY': 0.141,
    'RUB': 0.011,
    'INR': 0.012,
    'BTC': 91539.0,
}

# Currency glyphs rewritten to their codes before evaluation
CURRENCY_SYMBOLS = {
    '$': 'USD',
    '€': 'EUR',
    '£': 'GBP',
    '¥': 'JPY',  # also used for CNY; JPY wins
    '₩': 'KRW',
    '₽': 'RUB',
    '₹': 'INR',
    '₿': 'BTC',
}

# Word aliases registered on each currency unit (plurals are handled by pint)
CURRENCY_ALIASES = {
    'USD': ['dollar'],
    'EUR': ['euro'],
    'GBP': ['sterling'],
    'JPY': ['yen'],
    'KRW': ['won'],
    'CNY': ['yuan'],
    'RUB': ['ruble'],
    'INR': ['rupee'],
    'BTC': ['bitcoin'],
}

# Currency display names
CURRENCY_DISPLAY = {
    'USD': 'US Dollars',
    'EUR': 'Euros',
    'GBP': 'British Pounds',
    'JPY': 'Japanese Yen',
    'KRW': 'Korean Won',
    'CNY': 'Chinese Yuan',
    'RUB': 'Russian Rubles',
    'INR': 'Indian Rupees',
    'BTC': 'Bitcoin',
}


# =============================================================================
# UNIT CONSTANTS
# =============================================================================

# Extra unit aliases on top of the pint defaults (alias -> existing unit)
UNIT_ALIASES = {
    'lbs': 'pound',
}

# Keywords that convert the left-hand value into the unit on the right
CONVERSION_KEYWORDS = ('to', 'in')


# =============================================================================
# MATHEMATICAL FUNCTIONS
# =============================================================================

def lcm(a, b):
    """Calculate the Least Common Multiple of two numbers"""
    return abs(a * b) // math.gcd(a, b)

# Functions available in expressions on plain numbers
MATH_FUNCS = {
    # Trigonometric functions
    'sin': math.sin, 'cos': math.cos, 'tan': math.tan,
    'asin': math.asin, 'acos': math.acos, 'atan': math.atan,
    'sinh': math.sinh, 'cosh': math.cosh, 'tanh': math.tanh,
    'degrees': math.degrees, 'radians': math.radians,
    # Power and logarithmic functions
    'exp': math.exp, 'log': math.log, 'log10': math.log10, 'log2': math.log2,
    # Other mathematical functions
    'ceil': math.ceil, 'floor': math.floor,
    'factorial': math.factorial, 'gcd': math.gcd, 'lcm': lcm,
}

# Functions that also accept unit-tagged quantities
QUANTITY_FUNCS = {'sqrt', 'pow', 'abs', 'round', 'min', 'max'}

# Named constants
MATH_CONSTANTS = {
    'pi': math.pi,
    'e': math.e,
}

# Function names for autocompletion
FUNCTION_NAMES = sorted(set(MATH_FUNCS) | QUANTITY_FUNCS)


# =============================================================================
# SHEET CONSTANTS
# =============================================================================

# Character joining the words of a multi-word variable name
CANONICAL_JOIN = '_'

# Prefix of the implicit per-line references (line1, line2, ...)
LINE_REF_PREFIX = 'line'

# Names bound to the most recent non-empty result
PREVIOUS_ALIASES = ('prev', 'previous')

# Error marker shown for a line that failed to evaluate
INVALID_EXPRESSION = 'Invalid expression'


# =============================================================================
# CONFIGURATION
# =============================================================================

# Display precision
NUMBER_MAX_FRACTION_DIGITS = 4
QUANTITY_PRECISION = 4

# Live currency rates (exchangerate.host compatible endpoint)
CURRENCY_API_URL = 'https://api.exchangerate.host/latest'
CURRENCY_API_TIMEOUT = 3
LIVE_RATES_ENV = 'SHEETCALC_LIVE_RATES'

# API server
DEFAULT_HOST = '127.0.0.1'
DEFAULT_PORT = 8000
HOST_ENV = 'SHEETCALC_HOST'
PORT_ENV = 'SHEETCALC_PORT'

# Application metadata
APP_NAME = "SheetCalc"
APP_VERSION = "1.0.0"
