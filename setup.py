from setuptools import setup, find_packages

setup(
    name='mail-watch',
    version='0.1.0',
    packages=find_packages(include=['mailwatch', 'mailwatch.*']),
    python_requires='>=3.9',
    install_requires=[
        'pyyaml',
        'python-dotenv',
        'click',
    ],
    extras_require={
        'dev': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'mail-watch=mailwatch.cli:cli',
        ],
    },
)
