class DetectorError(Exception):
    """A remote or local detector call failed."""


class PrimaryDetectorError(DetectorError):
    pass


class SecondaryDetectorError(DetectorError):
    pass
