import setuptools

VERSION = '0.1.0'

setup_params = dict(
    name='fetchcache',
    version=VERSION,
    author='Kenneth VanderLinde',
    author_email='kwvanderlinde@gmail.com',
    url='https://github.com/kwvanderlinde/fetchcache',
    keywords='requests cache fetch retry asyncio',
    packages=setuptools.find_namespace_packages(include=['fetchcache', 'fetchcache.*']),
    package_data={'': ['LICENSE.txt']},
    include_package_data=True,
    description='A data-fetching layer for requests: retries, a TTL cache and per-subscription coordination',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    install_requires=['requests>=2.31'],
    extras_require={
        'dev': [
            'mockito>=1.4',
            'pytest>=7.0',
            'pytest-cov>=4.0',
            'ddt>=1.6',
        ]
    },
    entry_points={},
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Natural Language :: English',
        'Operating System :: OS Independent',

        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
        'Framework :: AsyncIO',
    ],
)


if __name__ == '__main__':
    setuptools.setup(**setup_params)
