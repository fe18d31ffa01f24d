'''Confine site users to chroot jails while their content stays at its original path.'''

__version__ = '0.1.0'
