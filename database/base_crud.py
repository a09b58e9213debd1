"""通用 CRUD 基类。

所有仓库继承 BaseCRUD 获得按主键查询、条件列表、更新、删除等通用能力。
每个方法都接受可选的外部 ``session``：传入时只 flush 不提交，
由调用方统一提交，从而把多个仓库操作组合进同一个事务。
"""
from typing import Optional, List, Dict, Any, Type, TypeVar
from sqlalchemy.orm import Session

from .connection import DatabaseConnection

ModelT = TypeVar("ModelT")


class BaseCRUD:
    """仓库基类，封装会话管理与通用增删改查。

    Attributes:
        conn: 数据库连接管理器。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def _get_session(self) -> Session:
        return self.conn.get_session()

    def create(self, model: Type[ModelT], session: Optional[Session] = None,
               **fields: Any) -> ModelT:
        """创建一条记录。

        Args:
            model: ORM 模型类。
            session: 外部会话（可选）。
            **fields: 字段值。

        Returns:
            新建的 ORM 对象（已分配主键）。
        """
        def _do(sess):
            obj = model(**fields)
            sess.add(obj)
            sess.flush()
            sess.refresh(obj)
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            sess.commit()
            return obj

    def get_by_id(self, model: Type[ModelT], obj_id: int,
                  session: Optional[Session] = None) -> Optional[ModelT]:
        """按主键查询，不存在返回 None。"""
        if session:
            return session.get(model, obj_id)

        with self._get_session() as sess:
            return sess.get(model, obj_id)

    def get_all(self, model: Type[ModelT],
                filters: Optional[Dict[str, Any]] = None,
                order_by: Any = None,
                session: Optional[Session] = None) -> List[ModelT]:
        """按等值条件查询记录列表。

        Args:
            model: ORM 模型类。
            filters: 字段名到值的等值过滤条件（可选）。
            order_by: 排序表达式（可选）。
            session: 外部会话（可选）。

        Returns:
            ORM 对象列表。
        """
        def _query(sess):
            query = sess.query(model)
            if filters:
                query = query.filter_by(**filters)
            if order_by is not None:
                query = query.order_by(order_by)
            return query.all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def update_by_id(self, model: Type[ModelT], obj_id: int,
                     session: Optional[Session] = None,
                     **fields: Any) -> Optional[ModelT]:
        """按主键更新字段。

        Returns:
            更新后的 ORM 对象，记录不存在返回 None。
        """
        def _do(sess):
            obj = sess.get(model, obj_id)
            if obj is None:
                return None
            for key, value in fields.items():
                setattr(obj, key, value)
            sess.flush()
            sess.refresh(obj)
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            if obj is not None:
                sess.commit()
            return obj

    def delete_by_id(self, model: Type[ModelT], obj_id: int,
                     session: Optional[Session] = None) -> bool:
        """按主键删除记录。

        Returns:
            是否删除成功（记录不存在返回 False）。
        """
        def _do(sess):
            obj = sess.get(model, obj_id)
            if obj is None:
                return False
            sess.delete(obj)
            sess.flush()
            return True

        if session:
            return _do(session)

        with self._get_session() as sess:
            deleted = _do(sess)
            if deleted:
                sess.commit()
            return deleted
