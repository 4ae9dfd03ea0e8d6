"""用户数据访问：按用户名查询与按公司/角色列出成员。"""

from typing import Optional

from sqlalchemy.orm import Session

from app.packages.drive.core.enums import UserRoleEnum
from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.user import User


class CRUDUser(CRUDBase[User]):
    def get_by_username(self, db: Session, username: str) -> Optional[User]:
        return self.query(db).filter(User.username == username).first()

    def get_by_email(self, db: Session, email: str) -> Optional[User]:
        return self.query(db).filter(User.email == email).first()

    def list_by_company(self, db: Session, company_id: int, *, role: Optional[UserRoleEnum] = None) -> list[User]:
        query = self.query(db).filter(User.company_id == company_id)
        if role is not None:
            query = query.filter(User.role == role.value)
        return query.order_by(User.id.asc()).all()

    def list_without_company(self, db: Session) -> list[User]:
        return self.query(db).filter(User.company_id.is_(None)).order_by(User.id.asc()).all()

    def list_all(self, db: Session) -> list[User]:
        return self.query(db).order_by(User.id.asc()).all()


user_crud = CRUDUser(User)
