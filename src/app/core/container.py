"""의존성 주입 컨테이너"""
from typing import Any, Dict, Type, TypeVar


T = TypeVar('T')

class DIContainer:
    """간단한 의존성 주입 컨테이너"""

    def __init__(self):
        self._singletons: Dict[Type, Any] = {}

    def register_singleton(self, interface: Type[T], implementation: T) -> None:
        """싱글톤 인스턴스 등록"""
        self._singletons[interface] = implementation

    def has(self, interface: Type) -> bool:
        return interface in self._singletons

    def get(self, interface: Type[T]) -> T:
        """서비스 인스턴스 조회"""
        if interface in self._singletons:
            return self._singletons[interface]

        interface_name = getattr(interface, "__name__", repr(interface))
        raise ValueError(f"Service {interface_name} not registered")

    def clear(self) -> None:
        """등록 정보 초기화 (테스트 및 재시작용)"""
        self._singletons.clear()

# 전역 컨테이너 인스턴스
container = DIContainer()
