"""rns: capability install engine for scaffolded React Native projects."""

__version__ = "0.4.0"
