from setuptools import setup

setup(
    name="dissect.regview",
    packages=["dissect.regview", "dissect.regview.tools"],
    install_requires=[
        "dissect.cstruct>=3.0.dev,<4.0.dev",
        "dissect.util>=3.0.dev,<4.0.dev",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "regview=dissect.regview.tools.dump:main",
        ],
    },
)
