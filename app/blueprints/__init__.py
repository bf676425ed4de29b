"""
Business Ops Automation Core
HTTP blueprints. Each one is a thin JSON layer over a service module;
``create_app`` registers them under ``/api/v1``.
"""
