"""Civic Vault Meta information.
   Civic Vault mints, stores and refreshes civic identity credentials.
"""
__title__ = 'civic_vault'
__description__ = (
   'Civic Vault mints civic identity credentials and keeps them '
   'in a time-bounded, attempt-limited custody vault.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2026 Civic Vault contributors'
__author__ = 'Civic Vault contributors'
__author_email__ = 'maintainers@civic-vault.dev'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/civic-vault/civic-vault'
