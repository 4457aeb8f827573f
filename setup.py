import re

from setuptools import setup

with open('remote_jenkins/remote_jenkins.py') as source:
    __version__ = re.search(
        r"^__version__ = '([^']+)'", source.read(), re.MULTILINE
    ).group(1)

setup(
    name="remote_jenkins",
    description="Trigger a remote Jenkins job and wait for it to finish",
    version=__version__,
    classifiers=[
        'Development Status :: 5 - Production/Stable',
        'Intended Audience :: Developers',
        'Topic :: Software Development :: Build Tools',
        'Environment :: Console',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: Implementation :: CPython',
    ],
    packages=['remote_jenkins'],
    python_requires='>=3.6',
    entry_points={
        'console_scripts': [
            'remote_jenkins=remote_jenkins.remote_jenkins:main'
        ]
    },
    install_requires=[
        'requests',
        'urllib3',
    ],
    extras_require={
        'dev': [
            'pytest',
            'pytest-cov',
            'flake8'
        ]
    },
)
