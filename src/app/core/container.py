"""의존성 주입 컨테이너"""
import inspect
from types import UnionType
from typing import Any, Callable, Dict, Type, TypeVar, Union, get_args, get_origin

T = TypeVar('T')

_UNRESOLVED = object()


class DIContainer:
    """싱글톤/팩토리/자동 연결 서비스 등록 컨테이너"""

    def __init__(self):
        self._singletons: Dict[Type, Any] = {}
        self._factories: Dict[Type, Callable[[], Any]] = {}
        self._services: Dict[Type, Type] = {}

    def register_singleton(self, interface: Type[T], implementation: T) -> None:
        """이미 생성된 인스턴스 등록"""
        self._singletons[interface] = implementation

    def register_transient(self, interface: Type[T], factory_func: Callable[[], T]) -> None:
        """조회할 때마다 새 인스턴스를 만드는 팩토리 등록"""
        self._factories[interface] = factory_func

    def register_service(self, interface: Type[T], service_class: Type[T]) -> None:
        """생성자 타입 힌트로 의존성을 해결해 최초 조회 시 생성"""
        self._services[interface] = service_class

    def is_registered(self, interface: Type) -> bool:
        return interface in self._singletons or interface in self._factories or interface in self._services

    def get(self, interface: Type[T]) -> T:
        if interface in self._singletons:
            return self._singletons[interface]
        if interface in self._factories:
            return self._factories[interface]()
        if interface in self._services:
            instance = self._create_instance(self._services[interface])
            self._singletons[interface] = instance
            return instance

        interface_name = getattr(interface, "__name__", repr(interface))
        raise ValueError(f"Service {interface_name} not registered")

    def reset(self) -> None:
        """모든 등록 해제 (테스트/재설정용)"""
        self._singletons.clear()
        self._factories.clear()
        self._services.clear()

    def _create_instance(self, service_class: Type[T]) -> T:
        kwargs = {}
        for name, param in inspect.signature(service_class.__init__).parameters.items():
            if name == 'self' or param.annotation is inspect.Parameter.empty:
                continue
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                continue

            resolved = self._resolve(param.annotation)
            if resolved is not _UNRESOLVED:
                kwargs[name] = resolved
            elif param.default is not inspect.Parameter.empty:
                kwargs[name] = param.default
            else:
                raise ValueError(f"Cannot resolve dependency {param.annotation} for {service_class.__name__}")

        return service_class(**kwargs)

    def _resolve(self, annotation: Any) -> Any:
        """단일 타입 또는 Optional/Union 힌트 해결 - 실패 시 _UNRESOLVED"""
        if get_origin(annotation) in (Union, UnionType):
            candidates = [arg for arg in get_args(annotation) if arg is not type(None)]
            optional = len(candidates) != len(get_args(annotation))
            for candidate in candidates:
                if self.is_registered(candidate):
                    return self.get(candidate)
            return None if optional else _UNRESOLVED

        if self.is_registered(annotation):
            return self.get(annotation)
        return _UNRESOLVED


# 전역 컨테이너 인스턴스
container = DIContainer()
