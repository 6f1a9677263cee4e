"""의존성 주입 컨테이너"""
import logging
from typing import Any, Callable, Dict, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class DIContainer:
    """명시적으로 등록된 클라이언트/서비스만 제공하는 컨테이너

    팩토리가 프로세스 시작 시 구성하고, 종료 시 clear()로 참조를 해제합니다.
    임포트 부수효과로 생성되는 전역 클라이언트는 두지 않습니다.
    """

    def __init__(self):
        self._singletons: Dict[Type, Any] = {}
        self._factories: Dict[Type, Callable[[], Any]] = {}

    def register_singleton(self, interface: Type[T], implementation: T) -> None:
        """싱글톤 인스턴스 등록"""
        self._singletons[interface] = implementation

    def register_transient(self, interface: Type[T], factory_func: Callable[[], T]) -> None:
        """팩토리 함수 등록 (매번 새 인스턴스 생성)"""
        self._factories[interface] = factory_func

    def get(self, interface: Type[T]) -> T:
        """서비스 인스턴스 조회"""
        if interface in self._singletons:
            return self._singletons[interface]

        if interface in self._factories:
            return self._factories[interface]()

        interface_name = getattr(interface, "__name__", repr(interface))
        raise ValueError(f"Service {interface_name} not registered")

    def is_registered(self, interface: Type) -> bool:
        return interface in self._singletons or interface in self._factories

    def clear(self) -> None:
        """등록 정보 초기화"""
        self._singletons.clear()
        self._factories.clear()


# 전역 컨테이너 인스턴스
container = DIContainer()
