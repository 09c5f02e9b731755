from .config_loader import Config, config_loader as config

__all__ = ['Config', 'config']
