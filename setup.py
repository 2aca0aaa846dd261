from setuptools import setup

setup(
    name='poisson-gbm',
    version='1.0',
    py_modules=['binning', 'loss_models', 'tree_builder', 'gbm_trainer'],
    description='Poisson loss model and gbm-style stochastic gradient boosting driver',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    python_requires='>=3.10',
    install_requires=['numpy>=1.22'],
    extras_require={
        'test': ['pytest>=7.0'],
    },
)
