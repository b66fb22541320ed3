from setuptools import setup

MODULES = [
    'constants',
    'currency_rates',
    'expression_evaluator',
    'sheet_engine',
    'api_server',
]

setup(
    name='sheetcalc',
    version='1.0.0',
    description='Line-by-line calculation sheet engine with units and currencies',
    py_modules=MODULES,
    python_requires='>=3.9',
    install_requires=[
        'pint>=0.23',
        'requests>=2.28',
        'fastapi>=0.100',
        'pydantic>=2.0',
        'uvicorn>=0.23',
    ],
    extras_require={
        'test': ['pytest>=7.0', 'httpx>=0.24'],
    },
    entry_points={
        'console_scripts': ['sheetcalc-server=api_server:main'],
    },
)
