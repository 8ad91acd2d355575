"""
Waffle test suite.

Test Organization:
    - tests/conftest.py: Shared fixtures (settings, Terraform sources,
      plan exports, WAFR questions, mocked boto3 clients)
    - tests/unit/test_*.py: Unit tests for individual modules, with all
      AWS calls mocked
"""
