"""
Request/response layer consumed by the external API.
"""
