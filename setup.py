from setuptools import setup, find_packages

with open('requirements.txt') as f:
    requirements = f.read().splitlines()

setup(
    name='chunkasr',
    version='0.1.0',
    description="Streaming chunk-based speech recognition inference with attention rescoring.",
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=requirements,
    extras_require={
        'onnx': ['onnxruntime'],
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'chunkasr=chunkasr.cli:main',
        ]
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ]
)
