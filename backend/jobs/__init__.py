"""
Background jobs for Breach Radar.

Jobs:
- retrain_breach_models: Retrain organisations' breach models from reviewer feedback
"""
