import os
import re
from setuptools import setup

base_path = os.path.dirname(__file__)

# Read the project version from "__init__.py"
regexp = re.compile(r'.*__version__ = [\'\"](.*?)[\'\"]', re.S)

init_file = os.path.join(base_path, 'fast_BEM', '__init__.py')
with open(init_file, 'r') as f:
    module_content = f.read()

    match = regexp.match(module_content)
    if match:
        version = match.group(1)
    else:
        raise RuntimeError(
            'Cannot find __version__ in {}'.format(init_file))

# Read the "README.rst" for project description
with open(os.path.join(base_path, 'README.rst'), 'r') as f:
    readme = f.read()

# Automatically parse the requirements.txt file for project requirements
def parse_requirements(filename):
    ''' Load requirements from a pip requirements file '''
    with open(os.path.join(base_path, filename), 'r') as fd:
        lines = []
        for line in fd:
            line = line.strip()
            if line and not line.startswith("#"):
                lines.append(line)
    return lines

requirements = parse_requirements('requirements.txt')

if __name__ == '__main__':
    setup(
        name='fast_BEM',
        description='Fast assembly of boundary integral operators with '
                    'singular corrections and far-field compression.',
        long_description=readme,
        license='MIT license',
        version=version,
        install_requires=requirements,
        extras_require={'test': ['pytest']},
        python_requires='>=3.10',
        keywords=['BEM', 'boundary element method', 'boundary integral '
                  'equations', 'Nystrom', 'fast multipole', 'low-rank'],
        packages=['fast_BEM'],
        classifiers=['Development Status :: 3 - Alpha',
                     'Intended Audience :: Science/Research',
                     'Programming Language :: Python :: 3.10']
    )
