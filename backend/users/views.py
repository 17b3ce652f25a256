from rest_framework import status, generics, permissions
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework_simplejwt.tokens import RefreshToken
from django.contrib.auth import get_user_model
from django.db.models import Q
from .serializers import UserRegistrationSerializer, UserSerializer
from wallet.ledger import create_wallet
from wallet.serializers import WalletSerializer

User = get_user_model()

class RegisterView(generics.CreateAPIView):
    queryset = User.objects.all()
    permission_classes = (permissions.AllowAny,)
    serializer_class = UserRegistrationSerializer

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user = serializer.save()

        # Gateway outages degrade to a placeholder account number
        wallet = create_wallet(user.id, user.display_name, user.email)

        refresh = RefreshToken.for_user(user)

        return Response({
            'user': UserSerializer(user, context=self.get_serializer_context()).data,
            'wallet': WalletSerializer(wallet).data,
            'refresh': str(refresh),
            'access': str(refresh.access_token),
        }, status=status.HTTP_201_CREATED)

class UserProfileView(generics.RetrieveUpdateAPIView):
    serializer_class = UserSerializer
    permission_classes = (permissions.IsAuthenticated,)

    def get_object(self):
        return self.request.user

@api_view(['GET'])
@permission_classes([permissions.IsAuthenticated])
def user_stats(request):
    """
    Get user statistics for dashboard
    """
    from jobs.models import Job

    user = request.user
    jobs = Job.objects.filter(Q(client=user) | Q(awarded_to=user))

    stats = {
        'rating': user.rating,
        'total_reviews': user.total_reviews,
        'jobs_in_progress': jobs.filter(status=Job.IN_PROGRESS).count(),
        'jobs_completed': jobs.filter(status=Job.COMPLETED).count(),
        'reviews_pending': sum(
            1 for job in jobs.filter(status=Job.COMPLETED)
            if job.role_of(user) in job.pending_reviews
        ),
    }

    return Response(stats)
