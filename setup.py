from setuptools import setup, find_packages

setup(
    name='kubeprov',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    package_data={
        'kubeprov': ['playbooks/*.yml', 'templates/*.j2'],
    },
    install_requires=[
        'typer',
        'rich',
        'python-dotenv',
        'pyyaml',
        'pydantic>=2',
        'jinja2',
        'paramiko',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'kubeprov=kubeprov.cli:app'
        ]
    },
    description='Provision kubeadm Kubernetes clusters over SSH with idempotent, declarative plays',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
