"""
Errores del núcleo de sesión.

Solo se definen aquí las condiciones que efectivamente se lanzan. Las
condiciones recuperables (reconocedor sin voz, error en un fragmento de
narración, bloque de marcadores ausente) se resuelven en el lugar donde
ocurren y nunca salen del núcleo.
"""


class SessionCoreError(Exception):
    """Base de los errores del núcleo de sesión"""


class MicrophoneUnavailable(SessionCoreError):
    """No hay reconocimiento de voz o el permiso fue denegado"""

    def __init__(self, reason: str = "unavailable"):
        super().__init__(f"Micrófono no disponible: {reason}")
        self.reason = reason


class ProviderError(SessionCoreError):
    """El proveedor de completions devolvió un error o un payload inválido"""


class TurnInFlightError(SessionCoreError):
    """Ya hay una petición al proveedor en curso para esta sesión"""


class PersistenceError(SessionCoreError):
    """El colaborador de persistencia no pudo guardar el registro"""
