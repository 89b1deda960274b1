"""
Bulk current-weather resolution service.
"""
