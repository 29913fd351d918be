"""Processing handlers grouped by driver.

- ``base`` defines the handler contract
- ``registry`` indexes configured handler chains by driver and mime
- ``properties`` and ``image`` hold the built-in handlers
"""
