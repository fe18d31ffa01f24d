'''Error kinds raised by the jail lifecycle.

Fatal kinds abort the whole run; the rest are caught per user by the
orchestrator.
'''


class JailError(Exception):
    '''Base class for all jail lifecycle errors.'''

    fatal = False

    def __init__(self, message, errno=None):
        super(JailError, self).__init__(message)
        self.errno = errno


class PrivilegeError(JailError):
    fatal = True


class ConfigError(JailError):
    fatal = True


class DependencyMissing(JailError):
    '''A required (fatal) or optional (degraded) external tool is absent.'''

    def __init__(self, message, required=True, errno=None):
        super(DependencyMissing, self).__init__(message, errno)
        self.fatal = required


class ValidationError(JailError):
    pass


class MountError(JailError):
    pass


class IdentityWriteError(JailError):
    pass


class IntegrityError(JailError):
    '''A jail tree is missing required paths.

    :param missing: relative paths that failed the check.
    '''

    def __init__(self, message, missing=(), fatal=False):
        super(IntegrityError, self).__init__(message)
        self.missing = list(missing)
        self.fatal = fatal
