"""Channel adapter layer: WhatsApp-style and Discord-style connections behind one envelope contract."""
__version__ = "0.3.0"
