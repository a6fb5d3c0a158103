from setuptools import setup, find_packages

package_name = 'device_relay'

setup(
    name='device-relay',
    version='1.0.0',
    packages=find_packages(include=[package_name, package_name + '.*']),
    python_requires='>=3.10',
    install_requires=[
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'websockets>=12.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
            'pytest-asyncio>=0.21',
            'httpx>=0.25',
        ],
    },
    zip_safe=True,
    description='WebSocket relay broker between devices and web clients',
    license='MIT',
    entry_points={
        'console_scripts': [
            'device-relay = device_relay.main:main',
            'device-relay-echo = device_relay.ws_client:main',
        ],
    },
)
