from setuptools import setup, find_packages

setup(
    name="posespline",
    version="0.1.0",
    description="Uniform B-splines on SE(3): evaluation, knot fitting and simulated motion profiles",
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    entry_points={
        'console_scripts': [
            'posespline = posespline.cli:main',
        ],
    },
    install_requires=[
        "numpy",
        "scipy",
    ],
    extras_require={
        "dev": [
            "pytest",
            "flake8",
            "black",
        ]
    }
)
