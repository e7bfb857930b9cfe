"""
Shared utilities and infrastructure components: settings-aware database
management, structured logging, audit facts and the exception taxonomy.
"""
