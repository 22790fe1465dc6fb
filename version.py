version = '0.1.0a1'

required_versions = {'toil': '>=6.0.0',
                     'pyyaml': '>=5.1'}
