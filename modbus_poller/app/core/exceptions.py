from typing import Optional


class ModbusPollerError(Exception):
    """Base exception for polling operations"""
    def __init__(self, message: str, connection_id: str = None, packet_id: str = None, point_id: str = None):
        super().__init__(message)
        self.message = message
        self.connection_id = connection_id
        self.packet_id = packet_id
        self.point_id = point_id
        self.raw_response: Optional[bytes] = None


class TransportError(ModbusPollerError):
    """Connect failure, timeout or socket/serial I/O failure"""
    pass


class FramingError(ModbusPollerError):
    """Short response, CRC mismatch, byte-count or header mismatch"""
    pass


class ModbusProtocolError(ModbusPollerError):
    """Exception response reported by the device"""
    def __init__(self, message: str, exception_code: int, function_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.exception_code = exception_code
        self.function_code = function_code


class UnsupportedFunctionError(ModbusPollerError):
    """Function code the read client cannot issue"""
    pass


class InvalidRequestError(ModbusPollerError):
    """Request parameters the codec refuses to frame, such as a count out of range"""
    pass


class DecodeError(ModbusPollerError):
    """A data point could not be decoded from the register window"""
    pass


class ConfigurationError(ModbusPollerError):
    """Raised when configuration is missing or invalid"""
    pass
